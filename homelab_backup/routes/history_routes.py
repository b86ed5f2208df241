"""
Status routes - run history, backup health and scheduler jobs.
"""

from flask import Blueprint, current_app, jsonify, request
from datetime import date, datetime, timedelta

from homelab_backup.auth import token_required
from homelab_backup.credentials import load_credentials, next_rotation_due, ConfigurationError
from homelab_backup.models import RunHistory


bp = Blueprint('history', __name__, url_prefix='/api')

VALID_STATUSES = ['running', 'success', 'failed', 'cancelled']
VALID_OPERATIONS = ['backup', 'restore', 'rotate']


def _isoformat(value):
    return value.isoformat() + 'Z' if value else None


def _serialize(record: RunHistory, with_logs: bool = False) -> dict:
    data = {
        'id': record.id,
        'operation': record.operation,
        'status': record.status,
        'dry_run': record.dry_run,
        'hostname': record.hostname,
        'started_at': _isoformat(record.started_at),
        'completed_at': _isoformat(record.completed_at),
        'archive_name': record.archive_name,
        'retention_class': record.retention_class,
        'file_size_bytes': record.file_size_bytes,
        'file_size_mb': round(record.file_size_bytes / 1024 / 1024, 2) if record.file_size_bytes else None,
        'remote_path': record.remote_path,
        'key_version': record.key_version,
        'warnings': record.warning_list,
        'error_message': record.error_message,
    }

    if with_logs:
        duration_seconds = None
        if record.completed_at:
            duration_seconds = int((record.completed_at - record.started_at).total_seconds())
        data['duration_seconds'] = duration_seconds
        data['logs'] = record.logs
    else:
        data['has_logs'] = bool(record.logs)

    return data


@bp.route('/history', methods=['GET'])
@token_required
def list_history():
    """
    Get run history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/failed/cancelled)
        - operation: Filter by operation (backup/restore/rotate)
        - days: Only show runs from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)
    """
    status_filter = request.args.get('status')
    operation_filter = request.args.get('operation')
    days_filter = request.args.get('days', type=int)
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = RunHistory.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(RunHistory.status == status_filter)

    if operation_filter:
        if operation_filter not in VALID_OPERATIONS:
            return jsonify({'error': 'Invalid operation filter'}), 400
        query = query.filter(RunHistory.operation == operation_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(RunHistory.started_at >= cutoff_date)

    total_count = query.count()
    records = query.order_by(RunHistory.started_at.desc(), RunHistory.id.desc()).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_serialize(record) for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/history/<int:history_id>', methods=['GET'])
@token_required
def get_history_detail(history_id):
    record = RunHistory.query.get_or_404(history_id)
    return jsonify(_serialize(record, with_logs=True))


@bp.route('/status', methods=['GET'])
@token_required
def get_status():
    """
    Backup health summary: last run, last success, key generation and next scheduled run.
    """
    from homelab_backup.scheduler import get_next_backup_run

    backups = RunHistory.query.filter(
        RunHistory.operation == 'backup',
        RunHistory.dry_run.is_(False)
    ).order_by(RunHistory.started_at.desc(), RunHistory.id.desc())

    last_run = backups.first()
    last_success = backups.filter(RunHistory.status == 'success').first()

    key_info = None
    try:
        record = load_credentials(current_app.config['BACKUP_ENV_FILE'])
    except ConfigurationError as e:
        current_app.logger.warning(f"Status: credential record unavailable: {e}")
    else:
        if record.current_key is not None:
            due = next_rotation_due(record)
            key_info = {
                'version': record.current_key.version,
                'created': record.current_key.created,
                'rotation_due': due.isoformat() if due else None,
                'rotation_overdue': bool(due and due < date.today()),
                'previous_version': record.previous_key.version if record.previous_key else None,
            }

    next_run = get_next_backup_run()

    return jsonify({
        'last_run': _serialize(last_run) if last_run else None,
        'last_success': _serialize(last_success) if last_success else None,
        'key': key_info,
        'next_scheduled_run': next_run.isoformat() if next_run else None,
    })


@bp.route('/jobs', methods=['GET'])
@token_required
def list_scheduled_jobs():
    """Scheduled and pending jobs with their next run times."""
    from homelab_backup.scheduler import get_scheduled_jobs
    return jsonify({'jobs': get_scheduled_jobs()})


@bp.route('/backup/run', methods=['POST'])
@token_required
def run_backup_now():
    """
    Queue a backup on the scheduler for immediate execution.

    JSON body (optional):
        - dry_run: Run without copying, transferring or pruning anything
    """
    from homelab_backup.scheduler import trigger_backup_now

    payload = request.get_json(silent=True) or {}
    dry_run = bool(payload.get('dry_run', False))

    try:
        job_id = trigger_backup_now(dry_run=dry_run)
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({
        'job_id': job_id,
        'dry_run': dry_run,
        'message': 'Backup has been queued for immediate execution'
    }), 202
