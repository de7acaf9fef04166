# =========================
# Restroom Checks - single file app.py (check gating, admin resolve, live refresh, monthly CSV)
# =========================
import os
import csv
import json
import queue
import secrets
import smtplib
import sqlite3
import ssl
import threading
import html as html_lib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from functools import wraps
from zoneinfo import ZoneInfo

import click
from flask import Blueprint, Flask, Response, g, jsonify, request, session
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS

# Flask-WTF: JSON payload validation + global CSRF
from flask_wtf import FlaskForm, CSRFProtect
from flask_wtf.csrf import CSRFError, generate_csrf

from wtforms import PasswordField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, Optional, Regexp

from passlib.hash import pbkdf2_sha256
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from apscheduler.schedulers.background import BackgroundScheduler
from werkzeug.exceptions import (
    BadRequest, Forbidden, HTTPException, InternalServerError, NotFound, Unauthorized,
)

# -------------------------
# App & Config
# -------------------------
app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret')
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('SQLITE_URI', 'sqlite:///cleanliness.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['MAX_CONTENT_LENGTH'] = int(os.environ.get('MAX_CONTENT_LENGTH', 64 * 1024))

# Cookie hardening (env-driven so dev over HTTP still works)
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE=os.environ.get('SESSION_COOKIE_SAMESITE', 'Lax'),
    SESSION_COOKIE_SECURE=os.environ.get('SESSION_COOKIE_SECURE', '0') == '1',
    WTF_CSRF_ENABLED=os.environ.get('WTF_CSRF_ENABLED', '1') == '1',
    WTF_CSRF_TIME_LIMIT=None,
    # Checked per view after the auth guard (see login_required), not in before_request
    WTF_CSRF_CHECK_DEFAULT=False,
    RATELIMIT_ENABLED=os.environ.get('RATELIMIT_ENABLED', '1') == '1',
    RATELIMIT_STORAGE_URI=os.environ.get('RATELIMIT_STORAGE_URI', 'memory://'),
)

# Shared secrets; staff falls back to the admin secret when unset
app.config['ADMIN_PASSWORD'] = (os.environ.get('ADMIN_PASSWORD') or '').strip()
app.config['USER_PASSWORD'] = (os.environ.get('USER_PASSWORD') or app.config['ADMIN_PASSWORD']).strip()
app.config['SESSION_IDLE_MINUTES'] = int(os.environ.get('SESSION_IDLE_MINUTES', 720))

app.config['APP_TIMEZONE'] = os.environ.get('APP_TIMEZONE', 'UTC')
app.config['REPORTS_DIR'] = os.path.abspath(os.environ.get('REPORTS_DIR', './reports'))
app.config['REPORT_KEEP_UNSENT'] = os.environ.get('REPORT_KEEP_UNSENT', '0') == '1'
app.config['BACKUP_DIR'] = os.path.abspath(os.environ.get('BACKUP_DIR', './backups'))
app.config['BACKUP_RETENTION_DAYS'] = int(os.environ.get('BACKUP_RETENTION_DAYS', 90))
app.config['SCHEDULER_ENABLED'] = os.environ.get('SCHEDULER_ENABLED', '1') == '1'

# Outbound mail (incident alerts + monthly report); optional
app.config['SMTP_HOST'] = os.environ.get('SMTP_HOST', 'smtp.gmail.com')
app.config['SMTP_PORT'] = int(os.environ.get('SMTP_PORT', 587))
app.config['SMTP_SECURE'] = os.environ.get('SMTP_SECURE', 'false').lower() == 'true'
app.config['SMTP_USER'] = os.environ.get('SMTP_USER', '')
app.config['SMTP_PASS'] = os.environ.get('SMTP_PASS', '')
app.config['ADMIN_EMAIL'] = os.environ.get('ADMIN_EMAIL', '')

db = SQLAlchemy(app)

# CSRF on guarded writes; login/logout rely on SameSite cookies
csrf = CSRFProtect(app)

limiter = Limiter(get_remote_address, app=app, default_limits=[])
LOGIN_LIMIT = '10/minute;100/hour'

# Credentialed CORS only for an explicitly configured frontend origin
if os.environ.get('FRONTEND_URL'):
    CORS(app, origins=os.environ['FRONTEND_URL'], supports_credentials=True)

CHECKS_PAGE_SIZE = 100
SMTP_TIMEOUT = 10
SSE_PING_SECONDS = 25

os.makedirs(app.config['REPORTS_DIR'], exist_ok=True)


# No caching of API payloads & security headers
@app.after_request
def add_no_cache_headers(resp):
    resp.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0, private'
    resp.headers['Pragma'] = 'no-cache'
    resp.headers['Expires'] = '0'
    resp.headers['X-Frame-Options'] = 'DENY'
    resp.headers['X-Content-Type-Options'] = 'nosniff'
    resp.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    resp.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'
    resp.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none';"
    return resp

# -------------------------
# Helpers: time / text
# -------------------------
def _utcnow():
    return datetime.now(timezone.utc)

def _as_utc(d):
    # SQLite hands back naive datetimes; everything is stored in UTC
    if d is None:
        return None
    return d.replace(tzinfo=timezone.utc) if d.tzinfo is None else d.astimezone(timezone.utc)

def iso(d):
    d = _as_utc(d)
    return d.isoformat().replace('+00:00', 'Z') if d else None

def app_tz():
    return ZoneInfo(app.config['APP_TIMEZONE'])

def fmt_local(d):
    """Human timestamp for mail and the audit file, e.g. ``Oct 5, 2026, 3:04 PM``."""
    d = _as_utc(d)
    if not d:
        return None
    t = d.astimezone(app_tz())
    return f"{t:%b} {t.day}, {t.year}, {t.hour % 12 or 12}:{t:%M %p}"

def _clean(value):
    if value is None:
        return None
    return str(value).strip()

# -------------------------
# Errors (JSON bodies, see error handlers at the bottom)
# -------------------------
class InvalidRequest(BadRequest):
    reason = 'invalid_request'
    description = 'Missing required fields'

    def __init__(self, description=None, fields=None):
        super().__init__(description)
        self.fields = fields or {}

class AuthenticationRequired(Unauthorized):
    reason = 'unauthenticated'
    description = 'Authentication required'

class InvalidPassword(Unauthorized):
    reason = 'invalid_credentials'
    description = 'Invalid password'

class AdminRequired(Forbidden):
    reason = 'forbidden'
    description = 'Admin access required'

class RestroomBlocked(Forbidden):
    reason = 'active_incident'
    description = 'Cannot log check - active incident on this restroom'

class IncidentNotFound(NotFound):
    reason = 'not_found'
    description = 'Incident not found'

class RestroomNotFound(NotFound):
    reason = 'not_found'
    description = 'Restroom not found'

class SecretNotConfigured(InternalServerError):
    reason = 'not_configured'

# -------------------------
# Database Models
# -------------------------
class Restroom(db.Model):
    __tablename__ = 'restrooms'
    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    building = db.Column(db.String(128))
    floor = db.Column(db.Integer)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'building': self.building, 'floor': self.floor}

class Custodian(db.Model):
    __tablename__ = 'custodians'
    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    gender = db.Column(db.String(16))  # restroom filtering happens client-side only

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'gender': self.gender}

class Check(db.Model):
    __tablename__ = 'checks'
    id = db.Column(db.Integer, primary_key=True)
    custodian_id = db.Column(db.String(64), db.ForeignKey('custodians.id'), nullable=False, index=True)
    restroom_id = db.Column(db.String(64), db.ForeignKey('restrooms.id'), nullable=False, index=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=_utcnow, index=True)
    notes = db.Column(db.Text, default='')

    custodian = db.relationship('Custodian', lazy='joined')
    restroom = db.relationship('Restroom', lazy='joined')

    def to_dict(self):
        return {
            'id': self.id,
            'custodianId': self.custodian_id,
            'restroomId': self.restroom_id,
            'timestamp': iso(self.timestamp),
            'notes': self.notes or '',
            'custodian': self.custodian.name if self.custodian else self.custodian_id,
            'restroom': self.restroom.name if self.restroom else self.restroom_id,
        }

class Incident(db.Model):
    __tablename__ = 'incidents'
    id = db.Column(db.Integer, primary_key=True)
    custodian_id = db.Column(db.String(64), db.ForeignKey('custodians.id'), nullable=False, index=True)
    restroom_id = db.Column(db.String(64), db.ForeignKey('restrooms.id'), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False)
    severity = db.Column(db.String(32), default='medium')
    timestamp = db.Column(db.DateTime, nullable=False, default=_utcnow, index=True)
    pending = db.Column(db.Boolean, nullable=False, default=True, index=True)
    resolved_at = db.Column(db.DateTime)
    # Snapshot of the restroom's latest check when the incident was filed
    last_checked_at = db.Column(db.DateTime)
    last_checked_by = db.Column(db.String(128))

    custodian = db.relationship('Custodian', lazy='joined')
    restroom = db.relationship('Restroom', lazy='joined')

    def to_dict(self):
        return {
            'id': self.id,
            'custodianId': self.custodian_id,
            'restroomId': self.restroom_id,
            'description': self.description,
            'severity': self.severity or 'medium',
            'timestamp': iso(self.timestamp),
            'pending': bool(self.pending),
            'resolvedAt': iso(self.resolved_at),
            'lastCheckedAt': iso(self.last_checked_at),
            'lastCheckedBy': self.last_checked_by,
            'custodian': self.custodian.name if self.custodian else self.custodian_id,
            'restroom': self.restroom.name if self.restroom else self.restroom_id,
        }

class Credential(db.Model):
    __tablename__ = 'credentials'
    scope = db.Column(db.String(16), primary_key=True)  # user|admin
    password_hash = db.Column(db.String(256), nullable=False)
    updated_at = db.Column(db.DateTime, default=_utcnow)

    def set_password(self, pw): self.password_hash = pbkdf2_sha256.hash(pw)
    def check_password(self, pw): return pbkdf2_sha256.verify(pw, self.password_hash)

class SessionRecord(db.Model):
    __tablename__ = 'sessions'
    token = db.Column(db.String(64), primary_key=True)
    authenticated = db.Column(db.Boolean, nullable=False, default=False)
    admin = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=_utcnow)
    last_seen = db.Column(db.DateTime, default=_utcnow, index=True)

# -------------------------
# Seed data
# -------------------------
SEED_RESTROOMS = [
    # Boys' restrooms
    {'id': 'boys-locker-room', 'name': "Boys' Locker Room", 'building': 'Athletics', 'floor': 1},
    {'id': 'g-wing', 'name': 'G Wing', 'building': 'G Wing', 'floor': 1},
    {'id': 'd-wing', 'name': 'D Wing', 'building': 'D Wing', 'floor': 1},
    {'id': 'l-wing', 'name': 'L Wing', 'building': 'L Wing', 'floor': 1},
    {'id': 'n-wing', 'name': 'N Wing', 'building': 'N Wing', 'floor': 1},
    # Girls' restrooms
    {'id': 'girls-locker-room', 'name': "Girls' Locker Room", 'building': 'Athletics', 'floor': 1},
    {'id': 'h-wing', 'name': 'H Wing', 'building': 'H Wing', 'floor': 1},
    {'id': 'j-wing', 'name': 'J Wing', 'building': 'J Wing', 'floor': 1},
    {'id': 'c-wing', 'name': 'C Wing', 'building': 'C Wing', 'floor': 1},
    {'id': 'e-wing', 'name': 'E Wing', 'building': 'E Wing', 'floor': 1},
    {'id': 'm-wing', 'name': 'M Wing', 'building': 'M Wing', 'floor': 1},
]

SEED_CUSTODIANS = [
    {'id': 'admin', 'name': 'Admin', 'gender': None},
    {'id': 'shantelle', 'name': 'Shantelle', 'gender': 'female'},
    {'id': 'jalessa', 'name': 'Jalessa', 'gender': 'female'},
    {'id': 'joel', 'name': 'Joel', 'gender': 'male'},
    {'id': 'javon', 'name': 'Javon', 'gender': 'male'},
    {'id': 'rey', 'name': 'Rey', 'gender': 'male'},
]

def seed_data():
    # Idempotent seeding (insert-or-ignore)
    for row in SEED_RESTROOMS:
        if not db.session.get(Restroom, row['id']):
            db.session.add(Restroom(**row))
    for row in SEED_CUSTODIANS:
        if not db.session.get(Custodian, row['id']):
            db.session.add(Custodian(**row))
    db.session.commit()
    app.logger.info('Database seeded with initial data')

def sync_credentials():
    """Hash the configured shared secrets into the credentials table."""
    for scope, key in (('user', 'USER_PASSWORD'), ('admin', 'ADMIN_PASSWORD')):
        secret = (app.config.get(key) or '').strip()
        cred = db.session.get(Credential, scope)
        if not secret:
            if cred:
                db.session.delete(cred)
            app.logger.warning('%s not set; %s login disabled', key, scope)
            continue
        if cred and cred.check_password(secret):
            continue
        if not cred:
            cred = Credential(scope=scope)
            db.session.add(cred)
        cred.set_password(secret)
        cred.updated_at = _utcnow()
    db.session.commit()

# -------------------------
# Helpers: sessions / capabilities
# -------------------------
@dataclass(frozen=True)
class Capabilities:
    authenticated: bool = False
    admin: bool = False

ANONYMOUS = Capabilities()

def _session_expired(rec):
    idle = app.config['SESSION_IDLE_MINUTES']
    if not idle:
        return False
    return _utcnow() - _as_utc(rec.last_seen or rec.created_at) > timedelta(minutes=idle)

@app.before_request
def _reset_session_cache():
    # g outlives a single request when an app context is already pushed
    g.pop('session_record', None)

def current_session_record():
    if 'session_record' in g:
        return g.session_record
    rec = None
    token = session.get('sid')
    if token:
        rec = db.session.get(SessionRecord, token)
        if rec is not None and _session_expired(rec):
            db.session.delete(rec)
            db.session.commit()
            session.pop('sid', None)
            rec = None
        elif rec is not None and _utcnow() - _as_utc(rec.last_seen) > timedelta(minutes=1):
            rec.last_seen = _utcnow()
            db.session.commit()
    g.session_record = rec
    return rec

def current_capabilities():
    rec = current_session_record()
    if rec is None:
        return ANONYMOUS
    return Capabilities(authenticated=bool(rec.authenticated), admin=bool(rec.admin))

def _open_session(**flags):
    # Fresh token on every login; capability bits already held are carried over
    old = current_session_record()
    now = _utcnow()
    rec = SessionRecord(token=secrets.token_urlsafe(32),
                        authenticated=bool(old and old.authenticated),
                        admin=bool(old and old.admin),
                        created_at=now, last_seen=now)
    for name, value in flags.items():
        setattr(rec, name, value)
    if old is not None:
        db.session.delete(old)
    db.session.add(rec)
    db.session.commit()
    session['sid'] = rec.token
    g.session_record = rec
    return rec

def purge_expired_sessions():
    idle = app.config['SESSION_IDLE_MINUTES']
    if not idle:
        return 0
    cutoff = _utcnow() - timedelta(minutes=idle)
    removed = SessionRecord.query.filter(SessionRecord.last_seen < cutoff).delete()
    db.session.commit()
    if removed:
        app.logger.info('Purged %s expired sessions', removed)
    return removed

def require_authenticated(caps):
    if not caps.authenticated:
        raise AuthenticationRequired()

def require_admin(caps):
    require_authenticated(caps)
    if not caps.admin:
        raise AdminRequired()

def _protect_csrf():
    if app.config['WTF_CSRF_ENABLED']:
        csrf.protect()  # no-op for GET/HEAD/OPTIONS

def login_required(fn):
    @wraps(fn)
    def _wrap(*a, **kw):
        require_authenticated(current_capabilities())
        _protect_csrf()
        return fn(*a, **kw)
    return _wrap

def admin_required(fn):
    # Implies login_required; 401 before 403 before CSRF
    @wraps(fn)
    def _wrap(*a, **kw):
        require_admin(current_capabilities())
        _protect_csrf()
        return fn(*a, **kw)
    return _wrap

# -------------------------
# Forms (JSON bodies)
# -------------------------
class ApiForm(FlaskForm):
    class Meta:
        csrf = False  # CSRFProtect guards the views instead

class PasswordForm(ApiForm):
    password = PasswordField('Password', filters=[_clean], validators=[DataRequired()])

class CheckForm(ApiForm):
    custodianId = StringField('Custodian', filters=[_clean], validators=[DataRequired(), Length(max=64)])
    restroomId = StringField('Restroom', filters=[_clean], validators=[DataRequired(), Length(max=64)])
    notes = TextAreaField('Notes', filters=[_clean], validators=[Optional(), Length(max=2000)])

class IncidentForm(ApiForm):
    custodianId = StringField('Custodian', filters=[_clean], validators=[DataRequired(), Length(max=64)])
    restroomId = StringField('Restroom', filters=[_clean], validators=[DataRequired(), Length(max=64)])
    description = TextAreaField('Description', filters=[_clean], validators=[DataRequired(), Length(max=4000)])
    severity = StringField('Severity', filters=[_clean], validators=[Optional(), Length(max=32)])

class ResolveForm(ApiForm):
    incidentId = StringField('Incident', filters=[_clean],
                             validators=[DataRequired(), Length(max=18),
                                         Regexp(r'^\d+$', message='Not a valid incident id.')])

def _load_form(form_cls):
    if request.is_json and not isinstance(request.get_json(silent=True), dict):
        raise InvalidRequest('Expected a JSON object')
    return form_cls()

def _validated(form_cls):
    form = _load_form(form_cls)
    if not form.validate_on_submit():
        raise InvalidRequest(fields=form.errors)
    return form

# -------------------------
# Notifications: live events
# -------------------------
class EventBroadcaster:
    """Fan small "data changed" events out to every connected SSE listener.

    Each listener owns a bounded queue. Publishing never blocks: a listener whose
    queue is full is dropped, and its stream ends so the client reconnects and
    refetches.
    """

    def __init__(self, max_queue=50):
        self._listeners = []
        self._lock = threading.Lock()
        self._max_queue = max_queue

    def subscribe(self):
        q = queue.Queue(maxsize=self._max_queue)
        with self._lock:
            self._listeners.append(q)
        return q

    def unsubscribe(self, q):
        with self._lock:
            if q in self._listeners:
                self._listeners.remove(q)

    def is_subscribed(self, q):
        with self._lock:
            return q in self._listeners

    def listener_count(self):
        with self._lock:
            return len(self._listeners)

    def close_all(self):
        with self._lock:
            self._listeners.clear()

    def publish(self, event):
        msg = f"data: {json.dumps(event)}\n\n"
        delivered = 0
        with self._lock:
            dead = []
            for q in self._listeners:
                try:
                    q.put_nowait(msg)
                    delivered += 1
                except queue.Full:
                    dead.append(q)
            for q in dead:
                self._listeners.remove(q)
        return delivered

BROADCASTER = EventBroadcaster()

def broadcast_change(reason):
    return BROADCASTER.publish({'type': 'data-changed', 'reason': reason})

# -------------------------
# Notifications: mail
# -------------------------
def mail_configured():
    return bool(app.config['SMTP_USER'] and app.config['SMTP_PASS'] and app.config['ADMIN_EMAIL'])

def _new_message(subject):
    msg = EmailMessage()
    msg['Subject'] = subject
    msg['From'] = app.config['SMTP_USER']
    msg['To'] = app.config['ADMIN_EMAIL']
    return msg

def send_email(msg):
    host, port = app.config['SMTP_HOST'], app.config['SMTP_PORT']
    context = ssl.create_default_context()
    if app.config['SMTP_SECURE']:
        with smtplib.SMTP_SSL(host, port, timeout=SMTP_TIMEOUT, context=context) as smtp:
            smtp.login(app.config['SMTP_USER'], app.config['SMTP_PASS'])
            smtp.send_message(msg)
    else:
        with smtplib.SMTP(host, port, timeout=SMTP_TIMEOUT) as smtp:
            smtp.starttls(context=context)
            smtp.login(app.config['SMTP_USER'], app.config['SMTP_PASS'])
            smtp.send_message(msg)

def last_checked_label(at, by):
    if at and by:
        return f"{fmt_local(at)} by {by}"
    if at:
        return fmt_local(at)
    return 'Not recorded'

def send_incident_email(rec):
    if not mail_configured():
        app.logger.debug('Incident email skipped: mail not configured')
        return False
    restroom = rec.restroom.name if rec.restroom else rec.restroom_id
    reporter = rec.custodian.name if rec.custodian else rec.custodian_id
    when = fmt_local(rec.timestamp)
    last = last_checked_label(rec.last_checked_at, rec.last_checked_by)

    msg = _new_message(f"[Restroom Incident] {restroom}")
    msg.set_content(
        f"Restroom: {restroom}\nReported by: {reporter}\nTime: {when}\n"
        f"Last checked: {last}\n\nDescription:\n{rec.description}"
    )
    esc = html_lib.escape
    msg.add_alternative(
        f"<p><strong>Restroom:</strong> {esc(restroom)}</p>"
        f"<p><strong>Reported by:</strong> {esc(reporter)}</p>"
        f"<p><strong>Time:</strong> {esc(when)}</p>"
        f"<p><strong>Last checked:</strong> {esc(last)}</p>"
        f"<p><strong>Description:</strong></p><p>{esc(rec.description)}</p>",
        subtype='html',
    )
    send_email(msg)
    app.logger.info('Incident email sent to %s', app.config['ADMIN_EMAIL'])
    return True

# -------------------------
# Notifications: monthly audit file
# -------------------------
REPORT_HEADER = ['Date', 'Type', 'Restroom', 'Custodian', 'Details']
_REPORT_LOCK = threading.Lock()

def report_month(when=None):
    return _as_utc(when or _utcnow()).astimezone(app_tz()).strftime('%Y-%m')

def report_path_for_month(month):
    return os.path.join(app.config['REPORTS_DIR'], f"{month}.csv")

def append_report_row(when, kind, restroom, custodian, details=''):
    path = report_path_for_month(report_month(when))
    with _REPORT_LOCK:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        new_file = not os.path.exists(path)
        with open(path, 'a', newline='', encoding='utf-8') as fh:
            writer = csv.writer(fh, lineterminator='\n')
            if new_file:
                writer.writerow(REPORT_HEADER)
            writer.writerow([fmt_local(when), kind, restroom, custodian, details or ''])
    return path

# -------------------------
# Post-commit effects
# -------------------------
def run_post_commit(effects):
    """Attempt each ``(label, fn)`` once, in order, after the store write committed.

    A failing effect is logged and skipped; it never reaches the caller and never
    stops the effects after it. Returns the labels that completed.
    """
    done = []
    for label, fn in effects:
        try:
            fn()
        except Exception:
            app.logger.warning('Post-commit effect %r failed', label, exc_info=True)
            continue
        done.append(label)
    return done

# -------------------------
# Gating engine
# -------------------------
def _require_custodian(custodian_id):
    cid = _clean(custodian_id)
    rec = db.session.get(Custodian, cid) if cid else None
    if rec is None:
        raise InvalidRequest('Unknown custodian')
    return rec

def _require_restroom(restroom_id):
    rid = _clean(restroom_id)
    rec = db.session.get(Restroom, rid) if rid else None
    if rec is None:
        raise InvalidRequest('Unknown restroom')
    return rec

def _last_check(restroom_id):
    return (Check.query.filter_by(restroom_id=restroom_id)
            .order_by(Check.timestamp.desc(), Check.id.desc()).first())

def _active_incident_exists(restroom_id):
    inc = Incident.__table__
    return db.select(inc.c.id).where(inc.c.restroom_id == restroom_id, inc.c.pending.is_(True)).exists()

# Serializes engine writes in this process so server timestamps follow commit order
_WRITE_LOCK = threading.Lock()

def can_log_check(restroom_id) -> bool:
    return Incident.query.filter_by(restroom_id=restroom_id, pending=True).first() is None

def log_check(caps, custodian_id, restroom_id, notes=None):
    require_authenticated(caps)
    custodian = _require_custodian(custodian_id)
    restroom = _require_restroom(restroom_id)

    chk = Check.__table__
    with _WRITE_LOCK:
        # Gate and insert in one statement: INSERT ... SELECT ... WHERE NOT EXISTS (pending incident)
        stmt = db.insert(chk).from_select(
            ['custodian_id', 'restroom_id', 'timestamp', 'notes'],
            db.select(
                db.literal(custodian.id),
                db.literal(restroom.id),
                db.literal(_utcnow(), db.DateTime),
                db.literal(_clean(notes) or ''),
            ).where(~_active_incident_exists(restroom.id)),
        )
        result = db.session.execute(stmt)
        if result.rowcount != 1:
            db.session.rollback()
            app.logger.info('Check refused for %s: active incident', restroom.id)
            raise RestroomBlocked()
        check_id = result.lastrowid
        db.session.commit()

    rec = db.session.get(Check, check_id)
    app.logger.info('Check logged: %s by %s for %s', rec.id, custodian.id, restroom.id)
    run_post_commit([
        ('audit', lambda: append_report_row(rec.timestamp, 'Check', restroom.name, custodian.name)),
        ('broadcast', lambda: broadcast_change('check')),
    ])
    return rec

def report_incident(caps, custodian_id, restroom_id, description, severity=None):
    require_authenticated(caps)
    description = _clean(description)
    if not description:
        raise InvalidRequest('Description is required')
    custodian = _require_custodian(custodian_id)
    restroom = _require_restroom(restroom_id)

    with _WRITE_LOCK:
        last = _last_check(restroom.id)
        rec = Incident(
            custodian_id=custodian.id,
            restroom_id=restroom.id,
            description=description,
            severity=_clean(severity) or 'medium',
            timestamp=_utcnow(),
            pending=True,
            last_checked_at=last.timestamp if last else None,
            last_checked_by=last.custodian.name if last else None,
        )
        db.session.add(rec)
        db.session.commit()
    app.logger.info('Incident reported: %s for %s', rec.id, restroom.id)

    run_post_commit([
        ('email', lambda: send_incident_email(rec)),
        ('audit', lambda: append_report_row(rec.timestamp, 'Incident', restroom.name, custodian.name, description)),
        ('broadcast', lambda: broadcast_change('incident')),
    ])
    return rec

def resolve_incident(caps, incident_id):
    """Close a pending incident. Returns ``(incident, changed)``.

    Resolving twice is a no-op success: ``resolved_at`` keeps its first value and no
    audit row or broadcast is emitted.
    """
    require_admin(caps)
    rec = db.session.get(Incident, incident_id)
    if rec is None:
        raise IncidentNotFound()

    inc = Incident.__table__
    with _WRITE_LOCK:
        result = db.session.execute(
            db.update(inc)
            .where(inc.c.id == rec.id, inc.c.pending.is_(True))
            .values(pending=False, resolved_at=_utcnow())
        )
        db.session.commit()
    db.session.refresh(rec)
    if result.rowcount == 0:
        app.logger.info('Incident %s already resolved', rec.id)
        return rec, False

    app.logger.info('Incident resolved: %s', rec.id)
    restroom = rec.restroom.name if rec.restroom else 'Unknown'
    run_post_commit([
        ('audit', lambda: append_report_row(rec.resolved_at, 'Resolved', restroom, 'Admin')),
        ('broadcast', lambda: broadcast_change('incident-resolved')),
    ])
    return rec, True

def get_restroom_status(restroom_id):
    restroom = db.session.get(Restroom, _clean(restroom_id) or '')
    if restroom is None:
        raise RestroomNotFound()
    last = _last_check(restroom.id)
    active = Incident.query.filter_by(restroom_id=restroom.id, pending=True).count()
    return {
        'restroomId': restroom.id,
        'lastCheckedAt': iso(last.timestamp) if last else None,
        'lastCheckedBy': last.custodian.name if last else None,
        'hasActiveIncident': active > 0,
        'activeIncidents': active,
    }

# -------------------------
# Monthly report, backups, scheduler
# -------------------------
def _previous_month_start(now):
    local = _as_utc(now).astimezone(app_tz())
    return (local.replace(day=1) - timedelta(days=1)).replace(day=1)

def send_monthly_report(now=None):
    """Mail last month's audit file to ADMIN_EMAIL and delete it.

    Returns one of ``missing``, ``sent``, ``failed``, ``deleted`` or ``kept``.
    """
    prev = _previous_month_start(now or _utcnow())
    month = prev.strftime('%Y-%m')
    path = report_path_for_month(month)
    if not os.path.exists(path):
        app.logger.info('Monthly report: no file for %s', month)
        return 'missing'

    if not mail_configured():
        if app.config['REPORT_KEEP_UNSENT']:
            app.logger.warning('Monthly report: mail not configured, keeping %s', path)
            return 'kept'
        app.logger.warning('Monthly report: mail not configured, deleting %s', path)
        os.remove(path)
        return 'deleted'

    label = prev.strftime('%B %Y')
    msg = _new_message(f"Restroom report – {label}")
    msg.set_content(f"Monthly restroom report for {label} is attached.")
    with open(path, 'rb') as fh:
        msg.add_attachment(fh.read(), maintype='text', subtype='csv', filename=f"report-{month}.csv")
    try:
        send_email(msg)
    except Exception:
        app.logger.exception('Monthly report send failed for %s', month)
        return 'failed'
    os.remove(path)
    app.logger.info('Monthly report sent and file deleted: %s', month)
    return 'sent'

def backup_database(now=None):
    """Copy the live SQLite file with the online-backup API and prune old copies."""
    src = db.engine.url.database
    if not src or src == ':memory:' or not os.path.exists(src):
        raise RuntimeError(f"Database file not found at {src}")
    backup_dir = app.config['BACKUP_DIR']
    os.makedirs(backup_dir, exist_ok=True)
    stamp = (now or datetime.now()).strftime('%Y%m%d_%H%M%S')
    dest = os.path.join(backup_dir, f"cleanliness_{stamp}.db")

    source = sqlite3.connect(src)
    try:
        target = sqlite3.connect(dest)
        try:
            source.backup(target)
        finally:
            target.close()
    finally:
        source.close()

    cutoff = (now or datetime.now()) - timedelta(days=app.config['BACKUP_RETENTION_DAYS'])
    removed = []
    for name in sorted(os.listdir(backup_dir)):
        if not (name.startswith('cleanliness_') and name.endswith('.db')):
            continue
        fpath = os.path.join(backup_dir, name)
        if fpath != dest and datetime.fromtimestamp(os.path.getmtime(fpath)) < cutoff:
            os.remove(fpath)
            removed.append(name)
    app.logger.info('Backup completed: %s (pruned %s)', os.path.basename(dest), len(removed))
    return dest, removed

_SCHEDULER = None

def _in_app_context(fn):
    @wraps(fn)
    def _job():
        with app.app_context():
            fn()
    return _job

def start_scheduler():
    global _SCHEDULER
    if _SCHEDULER is not None or not app.config['SCHEDULER_ENABLED']:
        return _SCHEDULER
    scheduler = BackgroundScheduler(
        timezone=app.config['APP_TIMEZONE'],
        job_defaults={'coalesce': True, 'misfire_grace_time': 3600},
    )
    scheduler.add_job(_in_app_context(send_monthly_report), 'cron', day=1, hour=0, minute=5, id='monthly-report')
    scheduler.add_job(_in_app_context(purge_expired_sessions), 'interval', hours=1, id='purge-sessions')
    scheduler.start()
    _SCHEDULER = scheduler
    app.logger.info('Monthly report cron: 1st of each month at 00:05 (%s)', app.config['APP_TIMEZONE'])
    return scheduler

# -------------------------
# Startup: create DB, seed restrooms/custodians, store secrets
# -------------------------
def init_db():
    db.create_all()
    seed_data()
    sync_credentials()

with app.app_context():
    init_db()

# -------------------------
# Routes (served at / and under /api)
# -------------------------
bp = Blueprint('api', __name__)

@bp.get('/health')
def health():
    return jsonify(status='ok', timestamp=iso(_utcnow()))

# --- Auth ---
def _password_matches(scope):
    cred = db.session.get(Credential, scope)
    if cred is None:
        label = 'User' if scope == 'user' else 'Admin'
        app.logger.error('%s password not configured', label)
        raise SecretNotConfigured(f"{label} password not configured")
    form = _load_form(PasswordForm)
    password = form.password.data if form.validate_on_submit() else ''
    return bool(password) and cred.check_password(password)

@bp.get('/auth/status')
def auth_status():
    caps = current_capabilities()
    return jsonify(isAuthenticated=caps.authenticated, isAdmin=caps.admin, csrfToken=generate_csrf())

@bp.post('/auth/login')
@limiter.limit(LOGIN_LIMIT)
def auth_login():
    if not _password_matches('user'):
        app.logger.warning('Failed user login attempt from %s', get_remote_address())
        raise InvalidPassword()
    _open_session(authenticated=True)
    app.logger.info('User login successful')
    return jsonify(success=True, message='Login successful')

@bp.post('/auth/logout')
def auth_logout():
    rec = current_session_record()
    if rec is not None:
        db.session.delete(rec)
        db.session.commit()
    session.clear()
    g.session_record = None
    app.logger.info('User logged out and session destroyed')
    return jsonify(success=True, message='Logged out')

@bp.get('/admin/status')
def admin_status():
    return jsonify(isAdmin=current_capabilities().admin)

@bp.post('/admin/login')
@limiter.limit(LOGIN_LIMIT)
def admin_login():
    if not _password_matches('admin'):
        app.logger.warning('Failed admin login attempt from %s', get_remote_address())
        raise InvalidPassword()
    _open_session(admin=True)
    app.logger.info('Admin login successful')
    return jsonify(success=True, message='Admin access granted')

@bp.post('/admin/logout')
def admin_logout():
    rec = current_session_record()
    if rec is not None and rec.admin:
        rec.admin = False
        db.session.commit()
    app.logger.info('Admin logged out')
    return jsonify(success=True, message='Logged out')

# --- Reference data ---
@bp.get('/restrooms')
@login_required
def list_restrooms():
    rows = Restroom.query.order_by(Restroom.name.asc()).all()
    return jsonify([r.to_dict() for r in rows])

@bp.get('/restrooms/<restroom_id>/status')
@login_required
def restroom_status(restroom_id):
    return jsonify(get_restroom_status(restroom_id))

@bp.get('/custodians')
@login_required
def list_custodians():
    rows = Custodian.query.order_by(Custodian.name.asc()).all()
    return jsonify([c.to_dict() for c in rows])

# --- Checks ---
@bp.get('/checks')
@login_required
def list_checks():
    rows = (Check.query.order_by(Check.timestamp.desc(), Check.id.desc())
            .limit(CHECKS_PAGE_SIZE).all())
    return jsonify([c.to_dict() for c in rows])

@bp.post('/checks')
@login_required
def create_check():
    form = _validated(CheckForm)
    rec = log_check(current_capabilities(), form.custodianId.data, form.restroomId.data, form.notes.data)
    return jsonify(success=True, id=rec.id, check=rec.to_dict()), 201

# --- Incidents ---
@bp.get('/incidents')
@login_required
def list_incidents():
    rows = Incident.query.order_by(Incident.timestamp.desc(), Incident.id.desc()).all()
    return jsonify([i.to_dict() for i in rows])

@bp.post('/incidents')
@login_required
def create_incident():
    form = _validated(IncidentForm)
    rec = report_incident(current_capabilities(), form.custodianId.data, form.restroomId.data,
                          form.description.data, form.severity.data)
    return jsonify(success=True, id=rec.id, incident=rec.to_dict()), 201

@bp.post('/incidents/resolve')
@admin_required
def incidents_resolve():
    form = _validated(ResolveForm)
    rec, changed = resolve_incident(current_capabilities(), int(form.incidentId.data))
    return jsonify(success=True, alreadyResolved=not changed, incident=rec.to_dict())

# --- Live updates (SSE) ---
@bp.get('/events')
@login_required
def events():
    q = BROADCASTER.subscribe()
    # The stream can stay open for hours; give the pooled connection back now
    db.session.close()

    def stream():
        try:
            yield ': connected\nretry: 3000\n\n'
            while True:
                try:
                    yield q.get(timeout=SSE_PING_SECONDS)
                except queue.Empty:
                    if not BROADCASTER.is_subscribed(q):
                        break
                    yield ': ping\n\n'
        finally:
            BROADCASTER.unsubscribe(q)

    resp = Response(stream(), mimetype='text/event-stream')
    resp.headers['X-Accel-Buffering'] = 'no'  # nginx
    return resp

app.register_blueprint(bp)
app.register_blueprint(bp, url_prefix='/api', name='api_prefixed')

# -------------------------
# Error handlers
# -------------------------
@app.errorhandler(CSRFError)
def csrf_error(e):
    return jsonify(error=e.description, reason='csrf'), 400

@app.errorhandler(HTTPException)
def http_error(e):
    body = {'error': e.description, 'reason': getattr(e, 'reason', None) or e.name.lower().replace(' ', '_')}
    if getattr(e, 'fields', None):
        body['fields'] = e.fields
    return jsonify(body), e.code

@app.errorhandler(Exception)
def internal_error(e):
    app.logger.exception('Unhandled error on %s %s', request.method, request.path)
    db.session.rollback()
    return jsonify(error='Something went wrong!', reason='internal'), 500

# -------------------------
# CLI
# -------------------------
@app.cli.command('init-db')
def init_db_command():
    """Create tables, seed restrooms/custodians and store the shared secrets."""
    init_db()
    click.echo('Database initialized.')

@app.cli.command('send-monthly-report')
def send_monthly_report_command():
    """Mail (or drop) last month's audit CSV now."""
    click.echo(f"Monthly report: {send_monthly_report()}")

@app.cli.command('backup-db')
def backup_db_command():
    """Back up the SQLite database and prune old backups."""
    try:
        dest, removed = backup_database()
    except RuntimeError as ex:
        raise click.ClickException(str(ex)) from ex
    click.echo(f"Backup completed: {dest} (pruned {len(removed)})")

# -------------------------
# Run (dev server)
# -------------------------
if __name__ == '__main__':
    # In production run app_server.py behind HTTPS; cookies secure via env.
    app.run(debug=True)
