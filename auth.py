"""First-party browser sign-in through Google OpenID Connect, and realtime tokens."""
import logging
import uuid
from urllib.parse import urlparse

from authlib.integrations.base_client import OAuthError as ClientOAuthError
from authlib.integrations.flask_client import OAuth
from flask import Blueprint, jsonify, redirect, request, session, url_for

from events import RealtimeTokenError
from identity import SESSION_USER_KEY, get_session_user_id
from services import get_services, request_base_url

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__)

GOOGLE_METADATA_URL = "https://accounts.google.com/.well-known/openid-configuration"
CALLBACK_SESSION_KEY = "signin_callback_url"


def init_oauth_client(app, settings) -> OAuth:
    """Register the Google client when credentials are configured."""
    oauth = OAuth(app)
    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=GOOGLE_METADATA_URL,
            client_kwargs={"scope": "openid email profile"},
        )
    return oauth


def safe_callback_url(value: str, base_url: str) -> str:
    """Only allow callbacks back into this application."""
    if not value:
        return "/"
    if value.startswith("/") and not value.startswith("//"):
        return value
    target = urlparse(value)
    base = urlparse(base_url)
    if target.scheme in ("http", "https") and target.netloc == base.netloc:
        return value
    return "/"


def _google_client():
    oauth = get_services().oauth
    return oauth.create_client("google") if oauth is not None else None


@auth_bp.route("/auth/signin/google", methods=["GET"])
def signin_google():
    google = _google_client()
    if google is None:
        return jsonify({"error": "signin_unavailable", "error_description": "Google sign-in is not configured"}), 503

    session[CALLBACK_SESSION_KEY] = safe_callback_url(request.args.get("callbackUrl", ""), request_base_url())
    redirect_uri = request_base_url() + url_for("auth.callback_google")
    return google.authorize_redirect(redirect_uri, prompt=request.args.get("prompt", "select_account"))


@auth_bp.route("/auth/callback/google", methods=["GET"])
def callback_google():
    google = _google_client()
    if google is None:
        return jsonify({"error": "signin_unavailable", "error_description": "Google sign-in is not configured"}), 503

    try:
        token = google.authorize_access_token()
    except ClientOAuthError as e:
        logger.info(f"Google sign-in failed: {e.error}")
        return jsonify({"error": "signin_failed", "error_description": e.description or e.error}), 400

    userinfo = token.get("userinfo") or {}
    email = userinfo.get("email")
    if not email:
        return jsonify({"error": "signin_failed", "error_description": "Identity provider returned no email"}), 400

    services = get_services()
    services.db.ensure_ready()
    user_id = services.games.upsert_user(email, name=userinfo.get("name"), image=userinfo.get("picture"))
    session[SESSION_USER_KEY] = user_id
    logger.info(f"User {user_id} signed in")
    return redirect(session.pop(CALLBACK_SESSION_KEY, "/"), 302)


@auth_bp.route("/auth/signout", methods=["GET", "POST"])
def signout():
    session.pop(SESSION_USER_KEY, None)
    return redirect(safe_callback_url(request.args.get("callbackUrl", ""), request_base_url()), 302)


@auth_bp.route("/api/ably/token", methods=["GET"])
def ably_token():
    """Subscribe-only realtime token; anonymous browsers get a throwaway client id."""
    services = get_services()
    services.db.ensure_ready()
    user_id = get_session_user_id(services.games)
    client_id = f"user:{user_id}" if user_id else f"anon:{uuid.uuid4()}"
    try:
        token = services.events.request_token(client_id)
    except RealtimeTokenError as e:
        return jsonify({"error": str(e)}), 503
    return jsonify(token)
