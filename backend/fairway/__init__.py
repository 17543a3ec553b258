from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:8081",
    "http://127.0.0.1:8081",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from fairway.main import main
    flask_app.register_blueprint(main)

    from fairway.api.outings import outings
    flask_app.register_blueprint(outings, url_prefix='/api/outings')

    from fairway.api.rounds import rounds
    flask_app.register_blueprint(rounds, url_prefix='/api/rounds')

    from fairway.api.notifications import notifications
    flask_app.register_blueprint(notifications, url_prefix='/api/notifications')

    from fairway.services.rounds.errors import RoundServiceError

    @flask_app.errorhandler(RoundServiceError)
    def handle_round_service_error(exc):
        return jsonify(exc.to_dict()), exc.status

    from fairway.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from fairway.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Must be signed in.', 'code': 'unauthenticated'}), 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            users = ['testuser1', 'testuser2', 'testuser3']
            for u in users:
                user = User(username=u, display_name=u)
                user.set_password('password')
                db.session.add(user)

            db.session.commit()
            print('Database has been reset and seeded!')

    @click.command('reconcile')
    def reconcile_command():
        """Runs one reconciler invocation (stale sweep, orphaned transfers, purge)."""
        from fairway.services.rounds.reconciler import run_reconciler
        summary = run_reconciler(flask_app)
        print(f'Reconciler finished: {summary}')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(reconcile_command)

    return flask_app
