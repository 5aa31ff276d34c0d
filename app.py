from flask import Flask, render_template, request, jsonify, redirect, url_for, send_file, session, flash, abort, g, make_response
from functools import wraps
from datetime import datetime
import io
import os
import time

import httpx
from dotenv import load_dotenv
from pyinstrument import Profiler

from api_client import ApiClient, ApiError, SessionExpired, API_BASE_URL, API_TIMEOUT, unwrap
from cache import cache_response, invalidate_cache, JsonCache
from csv_processor import read_upload_rows, XLSX_MIMETYPE
from dashboards import DosenDashboard, TimAkademikDashboard
from jadwal_nonblok import CSRDetail, NonBlokNonCSRDetail
from mahasiswa import MahasiswaScreen
from mahasiswa_import import (build_template, validate_rows, apply_cell_edit, submit_import,
                              TEMPLATE_FILENAME)
from pbl_assignment import PBLBoard, pbl_assignment_updated
from weather import fetch_weather

# Load environment variables from .env file
load_dotenv()

app = Flask(__name__)
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'fallback-secret-key')
app.config['WEATHER_API_KEY'] = os.getenv('WEATHER_API_KEY')

ADMIN_ROLES = ('super_admin', 'tim_akademik')

# Where each role lands after login
ROLE_HOME = {
    'super_admin': 'dashboard_tim_akademik',
    'tim_akademik': 'dashboard_tim_akademik',
    'dosen': 'dashboard_dosen',
    'mahasiswa': 'mahasiswa_page',
}

tim_akademik_cache = JsonCache('dashboard-tim-akademik', ttl=300)


# Profiling Middleware
@app.before_request
def before_request():
    request._start_time = time.time()

    if 'profile' in request.args:
        g.profiler = Profiler()
        g.profiler.start()


@app.after_request
def after_request(response):
    # Timing Log
    if hasattr(request, '_start_time'):
        elapsed = time.time() - request._start_time
        app.logger.info(f"[{request.remote_addr}] {request.method} {request.path} {elapsed:.3f}s")
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"

    # Profiler Report
    if hasattr(g, 'profiler'):
        g.profiler.stop()
        output_html = g.profiler.output_html()
        return make_response(output_html)

    return response


def get_api():
    """API client carrying the logged-in user's token, one per request."""
    if 'api' not in g:
        g.api = ApiClient(token=session.get('token'))
    return g.api


@app.teardown_appcontext
def close_api(exc):
    api = g.pop('api', None)
    if api is not None:
        api.close()


def get_current_user():
    return session.get('user')


def wants_json():
    return request.headers.get('X-Requested-With') == 'XMLHttpRequest' or request.is_json


def home_for(user):
    return url_for(ROLE_HOME.get((user or {}).get('role'), 'login'))


# Authentication decorators
def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if get_current_user() and session.get('token'):
            return f(*args, **kwargs)
        if wants_json():
            return jsonify({'success': False, 'error': 'Authentication required'}), 401
        return redirect(url_for('login'))
    return decorated_function


def role_required(*roles):
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            user = get_current_user()
            if user.get('role') not in roles:
                if wants_json():
                    return jsonify({'success': False, 'error': 'Access denied'}), 403
                flash('Access denied', 'danger')
                return redirect(home_for(user))
            return f(*args, **kwargs)
        return decorated_function
    return decorator


@app.errorhandler(SessionExpired)
def handle_session_expired(exc):
    session.clear()
    if wants_json():
        return jsonify({'success': False, 'error': exc.message}), 401
    flash(exc.message, 'warning')
    return redirect(url_for('login'))


@app.errorhandler(ApiError)
def handle_api_error(exc):
    app.logger.warning(f"API error on {request.path}: {exc.message}")
    return jsonify({'success': False, 'error': exc.message}), 502


def on_pbl_assignment_updated(sender, **extra):
    # Reporting pages show assignment counts
    invalidate_cache('reporting')
    invalidate_cache('dashboard-tim-akademik')


pbl_assignment_updated.connect(on_pbl_assignment_updated)


def login_error_message(exc):
    if exc.status == 401 and exc.message == 'Username/NIP/NID/NIM atau password salah.':
        return 'Username/NIP/NID/NIM atau password salah. Silakan coba lagi.'
    if exc.status == 403:
        return 'Akun ini sedang digunakan di perangkat lain. Silakan logout terlebih dahulu.'
    if exc.status == 422:
        return 'Format data tidak valid. Pastikan semua field telah diisi dengan benar.'
    if exc.status == 500:
        return 'Terjadi kesalahan pada server. Silakan coba beberapa saat lagi.'
    return exc.message or 'Login gagal. Silakan coba lagi.'


# Authentication Routes
@app.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        login_id = request.form.get('login', '').strip()
        password = request.form.get('password', '')

        try:
            body = get_api().post('/login', json={'login': login_id, 'password': password}) or {}
        except ApiError as exc:
            flash(login_error_message(exc), 'danger')
            return render_template('login.html'), 401 if exc.status == 401 else 400

        user = body.get('user') or {}
        session.clear()
        session['token'] = body.get('access_token')
        session['user'] = user
        flash(f"Selamat datang, {user.get('name', '')}!", 'success')
        return redirect(home_for(user))

    return render_template('login.html')


@app.route('/logout')
def logout():
    if session.get('token'):
        try:
            get_api().post('/logout')
        except ApiError as e:
            app.logger.info(f"Logout error: {e.message}")
    session.clear()
    flash('Anda telah logout', 'info')
    return redirect(url_for('login'))


# Health Check Endpoint (for load balancers, Docker, monitoring)
@app.route('/health')
def health_check():
    """
    Health check endpoint for monitoring and load balancers.
    Returns 200 OK if the academic API answers at all.
    """
    try:
        httpx.get(API_BASE_URL, timeout=min(API_TIMEOUT, 5))
        return jsonify({
            'status': 'healthy',
            'service': 'Academic Scheduling Admin',
            'api': 'reachable',
            'timestamp': datetime.now().isoformat()
        }), 200
    except httpx.HTTPError as e:
        return jsonify({
            'status': 'unhealthy',
            'service': 'Academic Scheduling Admin',
            'api': 'unreachable',
            'error': str(e),
            'timestamp': datetime.now().isoformat()
        }), 503


@app.route('/')
@login_required
def index():
    return redirect(home_for(get_current_user()))


def parse_int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def form_payload():
    return request.get_json(silent=True) or request.form.to_dict()


def parse_id(value):
    """Blank form values mean no id; anything else must be an integer."""
    if value in (None, ''):
        return None
    return int(value)


def parse_flag(value):
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'on')


def screen_response(screen, ok=True, status=None, **extra):
    """JSON for XHR callers with the screen state; banner errors map to 400."""
    data = screen.to_dict()
    data.update(extra)
    data['success'] = ok
    if not ok:
        banner = data.get('banner') or {}
        data['error'] = data.get('form_error') or banner.get('message')
    return jsonify(data), status or (200 if ok else 400)


# --- PBL board ---

def load_board():
    board = PBLBoard(get_api(), blok=request.args.get('blok', type=int))
    board.fetch_all()
    return board


@app.route('/pbl')
@role_required(*ADMIN_ROLES)
def pbl_page():
    board = load_board()
    return render_template('pbl.html', board=board.to_dict(request.args.get('q', '')),
                           stats=board.statistics(), user=get_current_user())


@app.route('/api/pbl')
@role_required(*ADMIN_ROLES)
def pbl_data():
    board = load_board()
    data = board.to_dict(request.args.get('q', ''))
    data['statistics'] = board.statistics()
    data['success'] = True
    return jsonify(data)


@app.route('/api/pbl/move', methods=['POST'])
@role_required(*ADMIN_ROLES)
def pbl_move():
    payload = form_payload()
    try:
        dosen_id = parse_id(payload.get('dosen_id'))
        target_pbl_id = parse_id(payload.get('target_pbl_id'))
        source_pbl_id = parse_id(payload.get('source_pbl_id'))
    except (TypeError, ValueError):
        return jsonify({'success': False, 'error': 'ID dosen atau PBL tidak valid'}), 400
    if dosen_id is None or target_pbl_id is None:
        return jsonify({'success': False, 'error': 'dosen_id dan target_pbl_id wajib diisi'}), 400

    board = load_board()
    decision = board.move_dosen(dosen_id, target_pbl_id, source_pbl_id,
                                confirm_mismatch=parse_flag(payload.get('confirm_mismatch')))
    status = 200 if decision.applied else (409 if decision.needs_confirmation else 400)
    return screen_response(board, decision.applied, status, decision=decision.to_dict())


@app.route('/api/pbl/<int:pbl_id>/dosen/<int:dosen_id>', methods=['DELETE'])
@role_required(*ADMIN_ROLES)
def pbl_unassign(pbl_id, dosen_id):
    board = load_board()
    return screen_response(board, board.unassign_dosen(dosen_id, pbl_id))


@app.route('/api/pbl/modules', methods=['POST'])
@role_required(*ADMIN_ROLES)
def pbl_add_module():
    payload = form_payload()
    kode = payload.get('mata_kuliah_kode')
    if not kode or not payload.get('nama_modul'):
        return jsonify({'success': False, 'error': 'Mata kuliah dan nama modul wajib diisi'}), 400
    board = load_board()
    modul_ke = parse_int(payload.get('modul_ke')) or board.next_modul_ke(kode)
    return screen_response(board, board.add_pbl(kode, modul_ke, payload['nama_modul']))


@app.route('/api/pbl/modules/<int:pbl_id>', methods=['PUT', 'DELETE'])
@role_required(*ADMIN_ROLES)
def pbl_module(pbl_id):
    board = load_board()
    if request.method == 'DELETE':
        return screen_response(board, board.delete_pbl(pbl_id))

    payload = form_payload()
    pbl = board.find_pbl(pbl_id)
    if pbl is None:
        return jsonify({'success': False, 'error': 'PBL tidak ditemukan'}), 404
    ok = board.update_pbl(pbl_id, payload.get('mata_kuliah_kode') or pbl.mata_kuliah_kode,
                          parse_int(payload.get('modul_ke'), pbl.modul_ke),
                          payload.get('nama_modul') or pbl.nama_modul)
    return screen_response(board, ok)


# --- Mahasiswa ---

def load_mahasiswa():
    screen = MahasiswaScreen(get_api(), page=parse_int(request.args.get('page'), 1),
                             page_size=parse_int(request.args.get('page_size'), 10))
    screen.load()
    screen.filters.update(request.args.to_dict())
    # Filters reset the page; honour the page the caller asked for
    screen.pagination.set_page(parse_int(request.args.get('page'), 1))
    return screen


@app.route('/mahasiswa')
@role_required(*ADMIN_ROLES, 'mahasiswa')
def mahasiswa_page():
    screen = load_mahasiswa()
    return render_template('mahasiswa.html', screen=screen.to_dict(), user=get_current_user())


@app.route('/api/mahasiswa', methods=['GET', 'POST'])
@role_required(*ADMIN_ROLES)
def mahasiswa_data():
    if request.method == 'GET':
        return screen_response(load_mahasiswa())
    screen = MahasiswaScreen(get_api())
    return screen_response(screen, screen.save(form_payload(), edit=False))


@app.route('/api/mahasiswa/<int:user_id>', methods=['PUT', 'DELETE'])
@role_required(*ADMIN_ROLES)
def mahasiswa_item(user_id):
    screen = MahasiswaScreen(get_api())
    if request.method == 'DELETE':
        return screen_response(screen, screen.delete(user_id))
    payload = dict(form_payload(), id=user_id)
    return screen_response(screen, screen.save(payload, edit=True))


@app.route('/api/mahasiswa/bulk-delete', methods=['POST'])
@role_required(*ADMIN_ROLES)
def mahasiswa_bulk_delete():
    ids = (request.get_json(silent=True) or {}).get('ids') or request.form.getlist('ids')
    if not ids:
        return jsonify({'success': False, 'error': 'Tidak ada data yang dipilih'}), 400
    screen = MahasiswaScreen(get_api())
    result = screen.bulk_delete(ids)
    return screen_response(screen, not result['failed'], 200, result=result)


@app.route('/mahasiswa/template')
@role_required(*ADMIN_ROLES)
def mahasiswa_template():
    mem = io.BytesIO(build_template())
    return send_file(mem, mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=TEMPLATE_FILENAME)


def existing_mahasiswa():
    return unwrap(get_api().get('/users', params={'role': 'mahasiswa'}), []) or []


@app.route('/mahasiswa/import/preview', methods=['POST'])
@role_required(*ADMIN_ROLES)
def mahasiswa_import_preview():
    upload = request.files.get('file')
    if not upload:
        return jsonify({'success': False, 'error': 'No file uploaded'}), 400

    try:
        headers, rows = read_upload_rows(upload)
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    result = validate_rows(rows, existing_mahasiswa(), headers)
    return jsonify({'success': True, 'headers': headers, 'rows': rows, **result.to_dict()})


@app.route('/mahasiswa/import/cell', methods=['POST'])
@role_required(*ADMIN_ROLES)
def mahasiswa_import_cell():
    payload = request.get_json(silent=True) or {}
    try:
        rows, cell_errors = apply_cell_edit(payload.get('rows') or [], payload.get('cell_errors') or [],
                                            parse_int(payload.get('row'), -1), payload.get('key', ''),
                                            payload.get('value'), existing_mahasiswa())
    except IndexError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    return jsonify({'success': True, 'rows': rows, 'cell_errors': cell_errors})


@app.route('/mahasiswa/import/submit', methods=['POST'])
@role_required(*ADMIN_ROLES)
def mahasiswa_import_submit():
    rows = (request.get_json(silent=True) or {}).get('rows') or []
    outcome = submit_import(get_api(), rows, existing_mahasiswa())
    if outcome.complete:
        invalidate_cache('dashboard-tim-akademik')
    status = 200 if outcome.complete else (400 if not outcome.sent else 422)
    return jsonify({'success': outcome.complete, **outcome.to_dict()}), status


# --- Dosen dashboard ---

def load_dosen_dashboard():
    semester = request.args.get('semester', 'ganjil')
    try:
        dashboard = DosenDashboard(get_api(), get_current_user(), semester=semester)
    except ValueError as e:
        abort(400, description=str(e))
    dashboard.load()
    return dashboard


@app.route('/dashboard-dosen')
@role_required('dosen')
def dashboard_dosen():
    dashboard = load_dosen_dashboard()
    return render_template('dashboard_dosen.html', dashboard=dashboard.to_dict(), user=get_current_user())


@app.route('/api/dashboard-dosen')
@role_required('dosen')
def dashboard_dosen_data():
    dashboard = load_dosen_dashboard()
    return screen_response(dashboard, dashboard.banner.kind != 'error')


@app.route('/api/jadwal/<kind>/<int:jadwal_id>/konfirmasi', methods=['POST'])
@role_required('dosen')
def konfirmasi_jadwal(kind, jadwal_id):
    status = form_payload().get('status')
    dashboard = DosenDashboard(get_api(), get_current_user(),
                               semester=request.args.get('semester', 'ganjil'))
    try:
        ok = dashboard.konfirmasi(jadwal_id, status, kind)
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    return screen_response(dashboard, ok)


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@role_required('dosen')
def notification_read(notification_id):
    dashboard = DosenDashboard(get_api(), get_current_user())
    return jsonify({'success': dashboard.mark_read(notification_id)})


@app.route('/api/notifications/<int:notification_id>', methods=['DELETE'])
@role_required('dosen')
def notification_delete(notification_id):
    dashboard = DosenDashboard(get_api(), get_current_user())
    return jsonify({'success': dashboard.delete_notification(notification_id)})


@app.route('/api/notifications/clear', methods=['POST'])
@role_required('dosen')
def notification_clear():
    dashboard = DosenDashboard(get_api(), get_current_user())
    return jsonify({'success': dashboard.clear_notifications()})


# --- Tim Akademik dashboard ---

def load_tim_akademik(initial=False):
    try:
        dashboard = TimAkademikDashboard(
            get_api(),
            attendance=request.args.get('attendance_semester', 'reguler'),
            assessment=request.args.get('assessment_semester', 'reguler'),
            schedule=request.args.get('schedule_semester', 'reguler'),
            cache=tim_akademik_cache,
        )
    except ValueError as e:
        abort(400, description=str(e))
    dashboard.load(initial=initial or 'refresh' in request.args)
    return dashboard


@app.route('/tim-akademik')
@role_required(*ADMIN_ROLES)
def dashboard_tim_akademik():
    dashboard = load_tim_akademik(initial=True)
    return render_template('dashboard_tim_akademik.html', dashboard=dashboard.to_dict(),
                           user=get_current_user())


@app.route('/api/dashboard-tim-akademik')
@role_required(*ADMIN_ROLES)
def dashboard_tim_akademik_data():
    dashboard = load_tim_akademik()
    ok = dashboard.banner.kind != 'error'
    data = dashboard.to_dict()
    data['success'] = ok
    if not ok:
        data['error'] = dashboard.banner.message
        return jsonify(data), 502
    return jsonify(data)


@app.route('/api/weather')
@login_required
@cache_response(ttl=600, prefix='weather')
def weather():
    lat = request.args.get('lat', type=float)
    lon = request.args.get('lon', type=float)
    return jsonify(fetch_weather(lat, lon, api_key=app.config['WEATHER_API_KEY']))


# --- CSR / non-blok non-CSR detail pages ---

DETAIL_SCREENS = {
    'csr': CSRDetail,
    'non-blok-non-csr': NonBlokNonCSRDetail,
}


def load_detail(section, kode):
    screen_cls = DETAIL_SCREENS.get(section)
    if screen_cls is None:
        abort(404)
    screen = screen_cls(get_api(), kode)
    screen.load()
    if isinstance(screen, NonBlokNonCSRDetail):
        screen.load_kelompok_besar()
    return screen


@app.route('/<any(csr, "non-blok-non-csr"):section>/<kode>')
@role_required(*ADMIN_ROLES)
def detail_page(section, kode):
    screen = load_detail(section, kode)
    return render_template('jadwal_detail.html', section=section, screen=screen.to_dict(),
                           user=get_current_user())


@app.route('/api/<any(csr, "non-blok-non-csr"):section>/<kode>/jadwal', methods=['GET', 'POST'])
@role_required(*ADMIN_ROLES)
def detail_jadwal(section, kode):
    screen = load_detail(section, kode)
    if request.method == 'GET':
        return screen_response(screen, screen.banner.kind != 'error')
    return screen_response(screen, screen.save(form_payload()))


@app.route('/api/<any(csr, "non-blok-non-csr"):section>/<kode>/jadwal/<int:jadwal_id>',
           methods=['GET', 'PUT', 'DELETE'])
@role_required(*ADMIN_ROLES)
def detail_jadwal_item(section, kode, jadwal_id):
    screen = load_detail(section, kode)
    if request.method == 'GET':
        try:
            return jsonify({'success': True, 'form': screen.edit_form(jadwal_id)})
        except KeyError:
            return jsonify({'success': False, 'error': 'Jadwal tidak ditemukan'}), 404
    if request.method == 'DELETE':
        return screen_response(screen, screen.delete(jadwal_id))
    return screen_response(screen, screen.save(form_payload(), jadwal_id))


@app.route('/api/csr/<kode>/jadwal/<int:jadwal_id>/absensi', methods=['GET', 'POST'])
@role_required(*ADMIN_ROLES)
def csr_absensi(kode, jadwal_id):
    screen = load_detail('csr', kode)
    try:
        ok = screen.open_absensi(jadwal_id)
    except KeyError:
        return jsonify({'success': False, 'error': 'Jadwal tidak ditemukan'}), 404
    if request.method == 'GET' or not ok:
        return screen_response(screen, ok)

    hadir = (request.get_json(silent=True) or {}).get('hadir') or {}
    for npm, value in hadir.items():
        screen.set_hadir(npm, value)
    return screen_response(screen, screen.save_absensi())


if __name__ == '__main__':
    app.run(debug=True, port=5000, use_reloader=False, threaded=True)
