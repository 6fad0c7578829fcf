from flask import Flask, request, jsonify, send_from_directory
from flask_socketio import SocketIO
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename
import os
import logging
import time

from config import Config
from models import db, User
from server import ChatServer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('ChatRelayFlask')


def create_app(config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)

    socketio = SocketIO(app, cors_allowed_origins=app.config['CORS_ORIGINS'],
                        async_mode=app.config['ASYNC_MODE'],
                        max_http_buffer_size=app.config['SOCKET_BUFFER_SIZE'])

    db.init_app(app)

    # Ensure upload folder exists
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    chat_server = ChatServer(app, socketio)
    app.extensions['chat_server'] = chat_server

    with app.app_context():
        db.create_all()
        chat_server.authenticator.provision_seed_users()
        if app.config['PRUNE_UNKNOWN_USERS']:
            chat_server.authenticator.prune_users()

    @app.route('/healthz')
    def healthcheck():
        return jsonify({'status': 'ok'})

    @app.route('/api/users')
    def get_users():
        try:
            users = User.query.order_by(User.username.asc()).all()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error listing users: {e}")
            return jsonify({'error': 'User store unavailable'}), 503
        return jsonify({'users': [u.to_dict() for u in users]})

    @app.route('/api/messages/<path:chat_id>')
    def get_messages(chat_id):
        page = request.args.get('page', 1, type=int)
        limit = request.args.get('limit', app.config['PAGE_SIZE'], type=int)
        limit = min(max(limit, 1), 100)
        try:
            result = chat_server.router.thread_page(chat_id, page, limit)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error loading messages for {chat_id}: {e}")
            return jsonify({'error': 'Message store unavailable'}), 503
        return jsonify(result)

    @app.route('/api/upload', methods=['POST'])
    def upload():
        upload_file = request.files.get('file')
        kind = request.form.get('kind', 'attachment')
        if upload_file is None or not upload_file.filename:
            return jsonify({'error': 'No file provided'}), 400
        if kind not in ('profile', 'attachment'):
            return jsonify({'error': f'Unknown upload kind: {kind}'}), 400
        mimetype = upload_file.mimetype or 'application/octet-stream'
        if kind == 'profile' and not mimetype.startswith('image/'):
            return jsonify({'error': 'Profile picture must be an image'}), 400

        file_name = secure_filename(upload_file.filename) or 'upload'
        stored_name = f"{int(time.time())}_{file_name}"
        file_path = os.path.join(app.config['UPLOAD_FOLDER'], stored_name)
        upload_file.save(file_path)
        size = os.path.getsize(file_path)
        logger.info(f"Stored {kind} upload {stored_name} ({size} bytes)")
        return jsonify({
            'path': f'/uploads/{stored_name}',
            'name': upload_file.filename,
            'type': mimetype,
            'size': size,
        }), 201

    @app.route('/uploads/<path:filename>')
    def uploaded_file(filename):
        return send_from_directory(app.config['UPLOAD_FOLDER'], filename)

    return app


if __name__ == '__main__':
    app = create_app()
    socketio = app.extensions['socketio']
    chat_server = app.extensions['chat_server']
    chat_server.start()

    print(f"\n=== Chat Relay Server ===")
    print(f"Local URL: http://localhost:{app.config['PORT']}")
    print("========================\n")

    try:
        socketio.run(app, host=app.config['HOST'], port=app.config['PORT'],
                     allow_unsafe_werkzeug=True)
    finally:
        chat_server.stop()
