"""
Multiplayer Session Host - control plane for ephemeral game servers

Responsibilities:
- Launch one game server task per workspace on demand
- Track session lifetime, capacity and expiry
- Tear tasks down exactly once (explicit stop or lazy TTL sweep)
- Store per-session player progress files
- Company-scoped stats and active session listings
"""
