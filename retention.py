import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from models import db, Message

logger = logging.getLogger('ChatRelayRetention')


def message_store_size():
    """Bytes of message bodies and file references currently stored"""
    total = db.session.query(
        func.coalesce(func.sum(
            func.coalesce(func.length(Message.content), 0)
            + func.coalesce(func.length(Message.file_data), 0)
        ), 0)
    ).scalar()
    return int(total or 0)


class RetentionSweeper:
    def __init__(self, app, socketio=None, threshold=350 * 1024 * 1024, batch_size=100,
                 interval=3600, measure_size=None):
        """Delete the oldest messages whenever the store grows past the threshold"""
        self.app = app
        self.socketio = socketio
        self.threshold = threshold
        self.batch_size = batch_size
        self.interval = interval
        self.measure_size = measure_size or message_store_size
        self.running = False
        self.task = None

    @classmethod
    def from_config(cls, app, socketio=None):
        return cls(
            app,
            socketio,
            threshold=app.config['RETENTION_THRESHOLD_BYTES'],
            batch_size=app.config['RETENTION_BATCH_SIZE'],
            interval=app.config['RETENTION_INTERVAL_SECONDS'],
        )

    def store_size(self):
        return self.measure_size()

    def sweep(self):
        """Run one pass; returns the number of messages deleted"""
        size = self.store_size()
        if size <= self.threshold:
            logger.debug(f"Store size {size} bytes within threshold {self.threshold}")
            return 0

        oldest = db.session.query(Message.id).order_by(
            Message.timestamp.asc(), Message.id.asc()
        ).limit(self.batch_size).all()
        ids = [row.id for row in oldest]
        if not ids:
            return 0
        try:
            deleted = Message.query.filter(Message.id.in_(ids)).delete(synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        logger.info(f"Store size {size} bytes over threshold {self.threshold}, deleted {deleted} oldest messages")
        return deleted

    def start(self):
        """Start the periodic sweep as a background task"""
        if self.running:
            return self.task
        if self.socketio is None:
            raise RuntimeError("Periodic sweeping needs a SocketIO server")
        self.running = True
        self.task = self.socketio.start_background_task(self._run)
        logger.info(f"Retention sweeper started (every {self.interval}s)")
        return self.task

    def stop(self):
        self.running = False

    def _run(self):
        while self.running:
            self.socketio.sleep(self.interval)
            if not self.running:
                break
            with self.app.app_context():
                try:
                    self.sweep()
                except Exception as e:
                    logger.error(f"Retention sweep failed: {e}")
