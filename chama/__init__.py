import logging
import os
from concurrent.futures import ThreadPoolExecutor

from flask import Flask
from chama.extensions import db, login_manager
from config import Config


def create_app(config_class=Config, clock=None, notifier=None):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )

    uri = app.config['SQLALCHEMY_DATABASE_URI']
    if uri.startswith('sqlite'):
        # bound the wait on a locked database by the per-entity timeout
        options = app.config.setdefault('SQLALCHEMY_ENGINE_OPTIONS', {})
        options.setdefault('connect_args', {}).setdefault(
            'timeout', app.config['AUTOMATION_ENTITY_TIMEOUT']
        )
        if uri.startswith('sqlite:///'):
            os.makedirs(os.path.dirname(uri[len('sqlite:///'):]) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # User loader for Flask-Login
    from chama.models import Member, utcnow

    @login_manager.user_loader
    def load_user(member_id):
        return db.session.get(Member, int(member_id))

    # Automation runtime: one owned instance of each component per app
    from chama.services.audit_log import AuditLog
    from chama.services.automation_service import AutomationRuntime
    from chama.services.event_bus import LedgerEventBus
    from chama.services.event_watcher import EventWatcher
    from chama.services.ledger_store import LedgerStore
    from chama.services.notifier import LoggingNotifier, NotificationDispatcher
    from chama.services.rule_engine import RuleEngine
    from chama.services.scheduler import Scheduler
    from chama.services.settings import AutomationSettings

    clock = clock or utcnow
    settings = AutomationSettings.from_mapping(app.config)
    bus = LedgerEventBus(clock=clock, trace_limit=settings.event_trace_limit)
    store = LedgerStore(bus=bus, entity_timeout=settings.entity_timeout)
    audit = AuditLog(store, clock=clock)
    executor = None
    if app.config.get('NOTIFIER_ASYNC'):
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='chama-notifier')
    dispatcher = NotificationDispatcher(notifier or LoggingNotifier(), executor=executor)
    engine = RuleEngine(store, audit, settings, dispatcher=dispatcher, clock=clock)

    runtime = AutomationRuntime(
        settings=settings,
        bus=bus,
        store=store,
        audit=audit,
        dispatcher=dispatcher,
        engine=engine,
        scheduler=Scheduler(engine, settings, clock=clock, app=app),
        watcher=EventWatcher(store, bus, settings, app=app),
    )
    # subscribe before any insert so no event is missed
    runtime.watcher.subscribe()
    app.extensions['automation'] = runtime

    # Register blueprints
    from chama.routes.automation import automation_bp
    from chama.routes.ledger import ledger_bp

    app.register_blueprint(automation_bp)
    app.register_blueprint(ledger_bp)

    with app.app_context():
        db.create_all()
        app.logger.info("Database tables created")

    runtime.start(
        scheduler=app.config.get('AUTOMATION_SCHEDULER_ENABLED', False),
        watcher=app.config.get('AUTOMATION_WATCHER_ENABLED', False),
    )

    return app
