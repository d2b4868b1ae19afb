"""
Backup status routes - health surfaces for monitoring.
"""

from flask import Blueprint, jsonify

from backvault.backup.status import BackupStatusTracker
from backvault.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('backup_status', __name__, url_prefix='/api/backups')
health_bp = Blueprint('health', __name__)


@bp.route('/status', methods=['GET'])
def list_status():
    """
    Get the latest backup status of every tracked container.

    Returns:
        JSON array of status entries (with derived is_stale)
    """
    tracker = BackupStatusTracker()
    return jsonify([entry.to_dict() for entry in tracker.list_all()])


@bp.route('/status/<container_id>', methods=['GET'])
def get_status(container_id):
    """Get the latest backup status of one container."""
    entry = BackupStatusTracker().get(container_id)

    if entry is None:
        return jsonify({'error': f'No backup status for container: {container_id}'}), 404

    return jsonify(entry.to_dict())


@bp.route('/stale', methods=['GET'])
def list_stale():
    """
    Get containers whose backups are stale.

    Stale means the last attempt failed, no backup ever succeeded, or the
    last success is older than 24 hours.
    """
    tracker = BackupStatusTracker()
    return jsonify([entry.to_dict() for entry in tracker.list_stale()])


@bp.route('/schedule', methods=['GET'])
def get_schedule():
    """Get scheduler state and the next run of each backup job."""
    return jsonify({
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'jobs': get_scheduled_jobs()
    })


@health_bp.route('/health')
def health():
    """Report degraded when any tracked container has a stale backup."""
    stale = len(BackupStatusTracker().list_stale())
    return jsonify({
        'status': 'degraded' if stale else 'healthy',
        'stale': stale
    }), 200
