import json
from datetime import datetime
from homelab_backup import db


class RunHistory(db.Model):
    """Backup, restore and key-rotation execution history and logs"""
    __tablename__ = 'run_history'

    id = db.Column(db.Integer, primary_key=True)
    operation = db.Column(db.String(20), nullable=False)  # backup, restore, rotate
    status = db.Column(db.String(20), nullable=False)  # running, success, failed, cancelled
    dry_run = db.Column(db.Boolean, default=False, nullable=False)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    hostname = db.Column(db.String(255))
    archive_name = db.Column(db.String(500))
    retention_class = db.Column(db.String(20))  # daily, weekly, monthly
    file_size_bytes = db.Column(db.BigInteger)
    remote_path = db.Column(db.String(1000))
    key_version = db.Column(db.Integer)  # Encryption key generation used
    warnings = db.Column(db.Text)  # JSON list of recoverable warnings
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    @property
    def warning_list(self):
        return json.loads(self.warnings) if self.warnings else []

    def __repr__(self):
        return f'<RunHistory {self.operation} status={self.status}>'
