import logging
from collections import Counter
from datetime import timedelta

from flask import Blueprint, Flask, abort, current_app, jsonify, render_template_string, request

from sparktrack import config
from sparktrack.geo import Locator
from sparktrack.store import DedupPolicy, JsonFileStore, VisitStore, format_ts, parse_ts, utc_now
from sparktrack.tracking import (
    MissingUserAgent,
    VisitTracker,
    client_ip_from_headers,
    ingest_visit,
    load_report,
)

bp = Blueprint("analytics", __name__)

DASHBOARD_PATH = "/visits"
UNTRACKED_PREFIXES = ("/api", "/static")
UNTRACKED_PATHS = {DASHBOARD_PATH, "/favicon.ico", "/healthz"}


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------
def create_app(overrides: dict | None = None, store: VisitStore | None = None,
               locator: Locator | None = None) -> Flask:
    app = Flask(__name__)
    app.config.update(config.defaults())
    if overrides:
        app.config.update(overrides)

    if store is None:
        store = JsonFileStore(app.config["ANALYTICS_DATA_DIR"])
    if locator is None:
        locator = Locator(
            timeout=float(app.config["ANALYTICS_GEO_TIMEOUT"]),
            geoip_db_path=app.config["GEOIP_DB_PATH"],
        )
    policy = DedupPolicy(
        key=app.config["ANALYTICS_DEDUP_KEY"],
        window=timedelta(hours=float(app.config["ANALYTICS_DEDUP_WINDOW_HOURS"])),
    )

    app.extensions["visit_store"] = store
    app.extensions["visit_locator"] = locator
    app.extensions["visit_policy"] = policy
    app.extensions["visit_tracker"] = VisitTracker(
        store, locator, policy,
        workers=int(app.config["ANALYTICS_TRACKER_WORKERS"]),
        max_pending=int(app.config["ANALYTICS_TRACKER_MAX_PENDING"]),
    )

    app.register_blueprint(bp)
    return app


def get_store() -> VisitStore:
    return current_app.extensions["visit_store"]


def check_token():
    expected = current_app.config.get("ANALYTICS_DASH_TOKEN")
    if expected and request.args.get("token", "") != expected:
        abort(403)


# -----------------------------------------------------------------------------
# Page request hook
# -----------------------------------------------------------------------------
def is_tracked_path(path: str) -> bool:
    if path in UNTRACKED_PATHS:
        return False
    return not any(path == p or path.startswith(p + "/") for p in UNTRACKED_PREFIXES)


@bp.before_app_request
def track_page_request():
    """
    Hand the visit to the background tracker and carry on; the response
    never waits for it.
    """
    if not current_app.config.get("ANALYTICS_TRACKING_ENABLED"):
        return None
    if not is_tracked_path(request.path):
        return None
    try:
        current_app.extensions["visit_tracker"].submit(
            client_ip_from_headers(request.headers, request.remote_addr),
            request.headers.get("User-Agent", ""),
            request.path,
            format_ts(utc_now()),
        )
    except RuntimeError as e:
        # executor already shut down
        current_app.logger.warning("visit tracker unavailable: %s", e)
    return None


# -----------------------------------------------------------------------------
# API
# -----------------------------------------------------------------------------
@bp.route("/api/track", methods=["POST"])
async def track():
    """
    Ingest one visit.
    Body example:
      { "ip": "203.0.113.7",
        "userAgent": "Mozilla/5.0 ...",
        "path": "/" }
    ip falls back to the request's own client address.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}

    user_agent = data.get("userAgent")
    if not user_agent:
        return jsonify({"error": "No user agent"}), 400

    ip = data.get("ip") or client_ip_from_headers(request.headers, request.remote_addr)
    path = data.get("path")

    try:
        result = await ingest_visit(
            get_store(),
            current_app.extensions["visit_locator"],
            current_app.extensions["visit_policy"],
            str(ip),
            str(user_agent),
            str(path) if path else None,
        )
    except MissingUserAgent:
        return jsonify({"error": "No user agent"}), 400
    except Exception:
        current_app.logger.exception("Tracking error")
        return jsonify({"error": "Failed to track visit"}), 500

    return jsonify(result.to_dict())


@bp.route("/api/visits")
def visits():
    check_token()
    try:
        report = load_report(get_store())
    except Exception:
        current_app.logger.exception("Error reading visits")
        return jsonify({"error": "Failed to load visits"}), 500

    return jsonify({name: [r.to_dict() for r in records] for name, records in report.items()})


# -----------------------------------------------------------------------------
# Sparkline builder (inline SVG chart)
# -----------------------------------------------------------------------------
def build_sparkline(points, width=320, height=60, stroke="#38bdf8"):
    """
    points: list[(day_string, count)], ascending by day.
    """
    if not points:
        svg = f'<svg width="{width}" height="{height}" viewBox="0 0 {width} {height}"></svg>'
        return {"svg": svg, "last_count": 0}

    counts = [c for _, c in points]
    low = min(counts)
    span = (max(counts) - low) or 1

    n = len(points)
    step = width / (n - 1) if n > 1 else 0
    coords = [
        (width / 2 if n == 1 else i * step, height - ((c - low) / span) * (height - 4) - 2)
        for i, c in enumerate(counts)
    ]
    d_attr = " ".join(f"{'M' if i == 0 else 'L'}{x:.1f},{y:.1f}" for i, (x, y) in enumerate(coords))

    svg = (
        f'<svg width="{width}" height="{height}" viewBox="0 0 {width} {height}" fill="none" '
        f'stroke="{stroke}" stroke-width="2" stroke-linecap="round"><path d="{d_attr}" /></svg>'
    )
    return {"svg": svg, "last_count": counts[-1]}


def visits_per_day(records, days=30):
    cutoff = utc_now() - timedelta(days=days)
    per_day = Counter()
    for r in records:
        ts = parse_ts(r.timestamp)
        if ts is not None and ts >= cutoff:
            per_day[ts.strftime("%Y-%m-%d")] += 1
    return sorted(per_day.items())


# -----------------------------------------------------------------------------
# Dashboard
# -----------------------------------------------------------------------------
DASHBOARD_HTML = """
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<title>Visits</title>
<style>
body{font-family:system-ui,-apple-system,"Segoe UI",Roboto,sans-serif;background:#0f172a;color:#f8fafc;padding:2rem;line-height:1.4}
.cards{display:grid;grid-template-columns:repeat(auto-fit,minmax(180px,1fr));gap:1rem;margin-bottom:2rem}
.card{background:#1e293b;border-radius:1rem;padding:1rem 1.25rem}
.label{font-size:.7rem;color:#94a3b8}
.value{font-size:1.4rem;font-weight:600}
.sections{display:grid;gap:1.5rem;grid-template-columns:repeat(auto-fit,minmax(320px,1fr))}
table{width:100%;border-collapse:collapse;font-size:.8rem}
th{text-align:left;color:#e2e8f0;border-bottom:1px solid #475569;padding:.4rem .25rem;font-size:.7rem;text-transform:uppercase}
td{border-bottom:1px solid #334155;padding:.4rem .25rem;color:#cbd5e1;word-break:break-word}
td.num{text-align:right;white-space:nowrap}
</style>
</head>
<body>
<h1>Visits</h1>

<section class="cards">
  <div class="card"><div class="label">Unique visitors</div><div class="value">{{ unique|length }}</div></div>
  <div class="card"><div class="label">All visits</div><div class="value">{{ all|length }}</div></div>
  <div class="card"><div class="label">Top page</div><div class="value">{{ top_page }}</div></div>
  <div class="card">
    {{ spark_svg | safe }}
    <div class="label">Unique visitors / day (30d), latest {{ spark_last }}</div>
  </div>
</section>

<section class="sections">
  {% for title, rows in breakdowns %}
  <div class="card">
    <h3>{{ title }}</h3>
    <table>
      {% for name, hits in rows %}
      <tr><td>{{ name }}</td><td class="num">{{ hits }}</td></tr>
      {% endfor %}
    </table>
  </div>
  {% endfor %}
</section>

{% for title, records in [("Recent unique visitors", unique), ("Recent visits", all)] %}
<h2>{{ title }}</h2>
<table>
  <tr><th>Time</th><th>Path</th><th>IP</th><th>Location</th><th>OS</th><th>Browser</th></tr>
  {% for r in records[-recent:]|reverse %}
  <tr>
    <td>{{ r.timestamp }}</td><td>{{ r.path }}</td><td>{{ r.ip }}</td>
    <td>{{ r.location }}</td><td>{{ r.os }}</td><td>{{ r.browser or "-" }}</td>
  </tr>
  {% endfor %}
</table>
{% endfor %}
</body>
</html>
"""


@bp.route(DASHBOARD_PATH)
def dashboard():
    check_token()
    report = load_report(get_store())
    unique, every = report["unique"], report["all"]

    paths = Counter(r.path for r in every).most_common(20)
    breakdowns = [
        ("Pages", paths),
        ("Operating systems", Counter(r.os for r in unique).most_common(20)),
        ("Browsers", Counter(r.browser or "Unknown" for r in unique).most_common(20)),
        ("Locations", Counter(r.location for r in unique).most_common(20)),
    ]
    spark = build_sparkline(visits_per_day(unique))

    return render_template_string(
        DASHBOARD_HTML,
        unique=unique,
        all=every,
        top_page=paths[0][0] if paths else "-",
        breakdowns=breakdowns,
        spark_svg=spark["svg"],
        spark_last=spark["last_count"],
        recent=50,
    )


@bp.route("/")
def index():
    return f'<!DOCTYPE html><title>Art Spark</title><p><a href="{DASHBOARD_PATH}">Visits</a></p>'


# -----------------------------------------------------------------------------
# health
# -----------------------------------------------------------------------------
@bp.route("/healthz")
def healthz():
    return "ok", 200


if __name__ == "__main__":
    # Dev mode, container uses gunicorn: gunicorn 'sparktrack.app:create_app()'
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    create_app().run(host="0.0.0.0", port=8000)
