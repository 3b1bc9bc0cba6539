import io
import logging

from flask import Blueprint, current_app, jsonify, request, send_file
from flask_login import current_user, login_required

from multiplayer.exceptions import ValidationError

logger = logging.getLogger(__name__)

bp = Blueprint('multiplayer', __name__, url_prefix='/multiplayer')


def orchestrator():
    return current_app.orchestrator


def storage():
    return current_app.session_storage


def guard():
    return current_app.guard


# ==================== Session lifecycle ====================

@bp.route('/start', methods=['POST'])
@login_required
def start_session():
    data = request.get_json(silent=True) or {}

    session, created = orchestrator().start_session(
        workspace_id=data.get('workspace_id'),
        company_id=current_user.company_id,
        max_players=data.get('max_players'),
        ttl_minutes=data.get('ttl_minutes'),
    )

    logger.info(
        f"Multiplayer session {'started' if created else 'reused'} via API: "
        f"user={current_user.id} workspace={session.workspace_id} session={session.id}"
    )

    return jsonify({
        'success': True,
        'message': 'Multiplayer session started successfully',
        'data': {
            'session_id': session.id,
            'session_url': session.session_url,
            'expires_at': session.expires_at.isoformat() + 'Z',
            'max_players': session.max_players,
        }
    })


@bp.route('/<session_id>/stop', methods=['POST'])
@login_required
def stop_session(session_id):
    orchestrator().stop_session(session_id, current_user.company_id)
    logger.info(f"Multiplayer session stopped via API: user={current_user.id} session={session_id}")
    return jsonify({
        'success': True,
        'message': 'Multiplayer session stopped successfully',
    })


@bp.route('/<session_id>/status')
@login_required
def session_status(session_id):
    status = orchestrator().get_session_status(session_id, current_user.company_id)
    return jsonify({'success': True, 'data': status})


@bp.route('/<session_id>/task')
@login_required
def session_task(session_id):
    task = orchestrator().describe_session_task(session_id, current_user.company_id)
    return jsonify({'success': True, 'data': {'task': task}})


@bp.route('/stats')
@login_required
def session_stats():
    stats = orchestrator().get_stats(current_user.company_id)
    return jsonify({'success': True, 'data': stats})


@bp.route('/active')
@login_required
def active_sessions():
    sessions = orchestrator().list_active_sessions(current_user.company_id)
    items = []
    for session in sessions:
        item = session.to_dict()
        item['workspace'] = session.workspace.to_summary()
        items.append(item)

    return jsonify({
        'success': True,
        'data': {
            'sessions': items,
            'count': len(items),
        }
    })


# ==================== Progress files ====================

@bp.route('/<session_id>/upload', methods=['POST'])
@login_required
def upload_progress(session_id):
    upload = request.files.get('file')
    filename = request.form.get('filename')

    errors = {}
    if upload is None or not upload.filename:
        errors['file'] = ['The file field is required.']
    if filename is not None and len(filename) > 100:
        errors['filename'] = ['The filename may not be greater than 100 characters.']
    if errors:
        raise ValidationError(errors)

    session = guard().authorize_session(session_id, current_user.company_id)
    result = storage().upload(session, upload.read(), filename or upload.filename)

    logger.info(
        f"Multiplayer progress file uploaded via API: user={current_user.id} "
        f"session={session_id} filename={result['filename']} size={result['size']}"
    )
    return jsonify({
        'success': True,
        'message': 'Progress file uploaded successfully',
        'data': result,
    })


@bp.route('/<session_id>/server-data', methods=['POST'])
@login_required
def store_server_data(session_id):
    body = request.get_json(silent=True) or {}
    data = body.get('data')
    if not isinstance(data, dict):
        raise ValidationError.for_field('data', 'The data field must be an object.')

    session = guard().authorize_session(session_id, current_user.company_id)
    result = storage().store_server_data(session, data, body.get('filename') or 'server_data.json')
    return jsonify({
        'success': True,
        'message': 'Server data stored successfully',
        'data': result,
    })


@bp.route('/<session_id>/files')
@login_required
def list_progress(session_id):
    session = guard().authorize_session(session_id, current_user.company_id)
    files = storage().list_files(session)
    return jsonify({
        'success': True,
        'data': {
            'files': files,
            'count': len(files),
        }
    })


@bp.route('/<session_id>/files', methods=['DELETE'])
@login_required
def cleanup_progress(session_id):
    session = guard().authorize_session(session_id, current_user.company_id)
    deleted = storage().cleanup_session(session)
    return jsonify({
        'success': True,
        'message': 'Session files cleaned up',
        'data': {'deleted': deleted},
    })


@bp.route('/<session_id>/files/<filename>', methods=['DELETE'])
@login_required
def delete_progress(session_id, filename):
    session = guard().authorize_session(session_id, current_user.company_id)
    storage().delete_file(session, filename)
    return jsonify({
        'success': True,
        'message': 'Progress file deleted successfully',
    })


@bp.route('/<session_id>/download/<filename>')
@login_required
def download_progress(session_id, filename):
    session = guard().authorize_session(session_id, current_user.company_id)
    file_data = storage().download(session, filename)

    return send_file(
        io.BytesIO(file_data['content']),
        mimetype='application/octet-stream',
        as_attachment=True,
        download_name=file_data['filename'],
    )


@bp.route('/workspaces/<int:workspace_id>/storage')
@login_required
def workspace_storage(workspace_id):
    workspace = guard().authorize_workspace(workspace_id, current_user.company_id)
    return jsonify({
        'success': True,
        'data': storage().storage_stats(workspace),
    })
