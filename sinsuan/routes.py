from urllib.parse import urlparse

from flask import Blueprint, current_app, jsonify, request

bp = Blueprint("main", __name__)


def parse_count_url(raw_url: str | None) -> tuple[str, str] | None:
    if not raw_url:
        return None
    try:
        parsed = urlparse(raw_url.strip())
        host = parsed.hostname
    except ValueError:
        return None
    if parsed.scheme not in {"http", "https"} or not host:
        return None
    return host, parsed.path or "/"


def get_client_ip() -> str | None:
    real_ip = request.headers.get(current_app.config["CLIENT_IP_HEADER"])
    if real_ip and real_ip.strip():
        return real_ip.strip()
    xff = request.headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",")[0].strip() or None
    return request.remote_addr


@bp.route("/count", methods=["GET", "OPTIONS"])
def count():
    if request.method == "OPTIONS":
        return "", 200

    count_url = request.headers.get(current_app.config["SINSUAN_COUNT_URL_HEADER"]) or request.headers.get("Referer")
    target = parse_count_url(count_url)
    if target is None:
        return jsonify({"ok": False, "error": "Missing or invalid count URL."}), 400

    domain, path = target
    counter = current_app.extensions["sinsuan"]
    counts = counter.handle_visit(
        domain,
        path,
        user_id=request.headers.get(current_app.config["SINSUAN_ID_HEADER"]),
        client_ip=get_client_ip(),
    )
    if counts is None:
        return jsonify({"ok": False, "error": "No visit data available."}), 404

    return jsonify(counts.to_dict())
