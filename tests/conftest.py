import os
import shutil
import tempfile

import pytest

_RUNTIME_DIR = tempfile.mkdtemp(prefix='restroom_checks_')
REPORTS_DIR = os.path.join(_RUNTIME_DIR, 'reports')
BACKUP_DIR = os.path.join(_RUNTIME_DIR, 'backups')

STAFF_PASSWORD = 'staff-secret'
ADMIN_PASSWORD = 'admin-secret'

# Must be in place before the app module is imported; it reads env at import time
os.environ.update({
    'SQLITE_URI': 'sqlite:///' + os.path.join(_RUNTIME_DIR, 'test.db'),
    'REPORTS_DIR': REPORTS_DIR,
    'BACKUP_DIR': BACKUP_DIR,
    'USER_PASSWORD': STAFF_PASSWORD,
    'ADMIN_PASSWORD': ADMIN_PASSWORD,
    'SECRET_KEY': 'test-secret',
    'WTF_CSRF_ENABLED': '0',
    'RATELIMIT_ENABLED': '0',
    'SCHEDULER_ENABLED': '0',
    'APP_TIMEZONE': 'UTC',
})
for _key in ('SMTP_HOST', 'SMTP_PORT', 'SMTP_SECURE', 'SMTP_USER', 'SMTP_PASS', 'ADMIN_EMAIL',
             'REPORT_KEEP_UNSENT', 'SESSION_IDLE_MINUTES', 'FRONTEND_URL'):
    os.environ.pop(_key, None)

import app as app_module  # noqa: E402

_MUTABLE_CONFIG = (
    'SMTP_HOST', 'SMTP_PORT', 'SMTP_USER', 'SMTP_PASS', 'ADMIN_EMAIL', 'SMTP_SECURE', 'REPORT_KEEP_UNSENT',
    'WTF_CSRF_ENABLED', 'USER_PASSWORD', 'ADMIN_PASSWORD', 'SESSION_IDLE_MINUTES',
)


@pytest.fixture(autouse=True)
def fresh_state():
    flask_app = app_module.app
    saved = {k: flask_app.config[k] for k in _MUTABLE_CONFIG}
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        app_module.db.session.remove()
        app_module.db.drop_all()
        app_module.init_db()
    shutil.rmtree(REPORTS_DIR, ignore_errors=True)
    shutil.rmtree(BACKUP_DIR, ignore_errors=True)
    app_module.BROADCASTER.close_all()
    yield
    app_module.BROADCASTER.close_all()
    flask_app.config.update(saved)


@pytest.fixture
def ctx():
    with app_module.app.app_context():
        yield
        app_module.db.session.remove()


@pytest.fixture
def mail_config():
    app_module.app.config.update(
        SMTP_HOST='smtp.gmail.com',
        SMTP_PORT=587,
        SMTP_USER='alerts@example.com',
        SMTP_PASS='app-password',
        ADMIN_EMAIL='facilities@example.com',
        SMTP_SECURE=False,
    )
    return app_module.app.config


@pytest.fixture
def client():
    return app_module.app.test_client()


@pytest.fixture
def staff_client():
    c = app_module.app.test_client()
    resp = c.post('/auth/login', json={'password': STAFF_PASSWORD})
    assert resp.status_code == 200
    return c


@pytest.fixture
def admin_client(staff_client):
    resp = staff_client.post('/admin/login', json={'password': ADMIN_PASSWORD})
    assert resp.status_code == 200
    return staff_client
