"""
Caller identity.

Authentication happens upstream; the gateway forwards the authenticated
user and company as request headers and Flask-Login exposes them as
``current_user``.
"""
from flask import jsonify, request
from flask_login import LoginManager, UserMixin

USER_HEADER = 'X-User-Id'
COMPANY_HEADER = 'X-Company-Id'

login_manager = LoginManager()


class Caller(UserMixin):

    def __init__(self, user_id: str, company_id: int):
        self.id = user_id
        self.company_id = company_id

    def get_id(self):
        return str(self.id)


@login_manager.request_loader
def load_caller_from_request(req):
    user_id = req.headers.get(USER_HEADER)
    company_id = req.headers.get(COMPANY_HEADER, '')
    if not user_id or not company_id.isdigit():
        return None
    return Caller(user_id=user_id, company_id=int(company_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({
        'success': False,
        'message': 'Unauthenticated',
        'path': request.path,
    }), 401
