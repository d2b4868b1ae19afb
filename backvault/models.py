from datetime import datetime
from backvault import db


class BackupStatus(db.Model):
    """Latest backup outcome per container"""
    __tablename__ = 'backup_status'

    container_id = db.Column(db.String(255), primary_key=True)
    node_id = db.Column(db.String(255), nullable=False, index=True)
    last_backup_at = db.Column(db.DateTime, nullable=True, index=True)  # Last successful backup (UTC)
    last_backup_size_mb = db.Column(db.Float)
    last_backup_path = db.Column(db.String(500))
    last_backup_success = db.Column(db.Boolean, default=False, nullable=False)
    last_backup_error = db.Column(db.Text)
    total_backups = db.Column(db.Integer, default=0, nullable=False)  # Successful backups only
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<BackupStatus {self.container_id} node={self.node_id} success={self.last_backup_success}>'
