# zaptrix_app/__init__.py

import os
import logging
from logging.handlers import RotatingFileHandler

import click
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .config import Config
from .models import Base
# Standalone engine/session used by the services and the Celery workers
from .utils import db_utils

# Flask-SQLAlchemy shares the declarative metadata so Flask-Migrate sees every table
db = SQLAlchemy(metadata=Base.metadata)
migrate = Migrate()


def _configure_logging(app: Flask) -> None:
    if not app.debug and not app.testing:
        log_dir = app.config.get('LOG_DIR')
        if not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir)
            except OSError as e:
                app.logger.error(f"Error creating log directory {log_dir}: {e}")
        if os.path.exists(log_dir) and os.access(log_dir, os.W_OK):
            file_handler = RotatingFileHandler(app.config.get('LOG_FILE'), maxBytes=1024 * 1024 * 10, backupCount=5)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s %(name)s: %(message)s [in %(pathname)s:%(lineno)d]'))
            file_handler.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
            app.logger.addHandler(file_handler)
            # Service modules log through their own module loggers
            logging.getLogger('zaptrix_app').addHandler(file_handler)
            logging.getLogger('zaptrix_app').setLevel(app.config.get('LOG_LEVEL', 'INFO'))
            app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
            app.logger.info('Zaptrix application logging to file configured.')
        else:
            app.logger.warning(f"Log directory {log_dir} does not exist or is not writable. File logging disabled.")
    else:
        app.logger.setLevel(logging.DEBUG)
        app.logger.info("Zaptrix application running in DEBUG/TESTING mode. Using default stderr logger.")


def create_app(config_class=Config, **component_overrides):
    """
    Application factory function.
    Configures and returns the Flask application instance.
    ``component_overrides`` (redis_client, broker_client, lock, http_session)
    are passed to build_components, e.g. to inject fakes in tests.
    """
    app = Flask(__name__)

    # 1. Load Configuration
    app.config.from_object(config_class)
    app.logger.info(f"Zaptrix application configured with '{config_class.__name__}'.")

    # 2. Initialize Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    if not db_utils.init_db(app):
        app.logger.error("Database utilities failed to initialize. DB operations will fail.")

    # 3. Configure Logging
    _configure_logging(app)

    # 4. Wire relay components and point Celery at this app's broker
    from .celery_app import celery_app
    celery_app.conf.update(broker_url=app.config.get('broker_url'),
                           result_backend=app.config.get('result_backend'))
    from .services.components import build_components
    components = build_components(app.config, **component_overrides)
    app.extensions['zaptrix'] = components

    # 5. Register Blueprints
    from .api import api_bp
    from .api.webhook_routes import webhooks_bp
    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(webhooks_bp, url_prefix='/webhooks')
    app.logger.info("Registered blueprints at /api and /webhooks.")

    # 6. CLI
    @app.cli.command('worker')
    @click.argument('queue_name')
    @click.option('--loglevel', default='INFO')
    def run_worker(queue_name, loglevel):
        """Start a Celery worker bound to one relay queue."""
        from .celery_app import QUEUES, worker_argv
        if queue_name not in QUEUES:
            raise click.BadParameter(f"Unknown queue '{queue_name}'. Choose from: {', '.join(QUEUES)}")
        app.logger.info(f"Starting worker for queue {queue_name} "
                        f"(concurrency {QUEUES[queue_name].concurrency}).")
        celery_app.worker_main(worker_argv(queue_name, loglevel))

    @app.cli.command('init-db')
    def init_db_command():
        """Create the database tables without running migrations."""
        db_utils.create_all_tables()
        click.echo("Tables created.")

    # 7. Define Shell Context
    @app.shell_context_processor
    def make_shell_context():
        from .models import ConversationMapping, PortalCredential
        return {
            'db': db,
            'ConversationMapping': ConversationMapping,
            'PortalCredential': PortalCredential,
            'components': app.extensions['zaptrix'],
        }

    app.logger.info(f"Zaptrix Flask application instance ({app.name}) fully created and configured.")
    return app
