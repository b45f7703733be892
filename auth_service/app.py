import os
import logging

from flask import Flask, request, jsonify, g
from flasgger import Swagger
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import Config
from .credentials import CredentialStore
from .errors import AuthError
from .middleware import admin_required, auth_required, bearer_token
from .models import db
from .notifier import build_notifier, resolve_email_provider
from .service import AuthService
from .sessions import ClientMeta, SessionStore
from .tokens import TokenIssuer

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(test_config=None, notifier=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    app.json.sort_keys = False
    if test_config:
        app.config.update(test_config)

    # Fails fast when the secrets are missing
    token_issuer = TokenIssuer.from_config(app.config)

    if app.config["PROXY_FIX_X_FOR"]:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config["PROXY_FIX_X_FOR"])

    swagger_config = {
        "headers": [],
        "specs": [
            {
                "endpoint": 'apispec',
                "route": '/apispec.json',
                "rule_filter": lambda rule: True,
                "model_filter": lambda tag: True,
            }
        ],
        "static_url_path": "/flasgger_static",
        "swagger_ui": True,
        "specs_route": "/apidocs/"
    }
    Swagger(app, config=swagger_config)

    db.init_app(app)

    if notifier is None:
        notifier = build_notifier(resolve_email_provider(app.config), app.config)

    credentials = CredentialStore(app.config["PASSWORD_HASH_METHOD"])
    session_store = SessionStore(
        lifetime=app.config["SESSION_LIFETIME"],
        grace=app.config["SESSION_EXPIRY_GRACE"],
    )
    auth = AuthService(
        credentials,
        session_store,
        token_issuer,
        notifier,
        min_password_length=app.config["MIN_PASSWORD_LENGTH"],
        reset_expires=app.config["RESET_TOKEN_EXPIRES"],
    )
    app.extensions["token_issuer"] = token_issuer
    app.extensions["session_store"] = session_store
    app.extensions["notifier"] = notifier
    app.extensions["auth_service"] = auth

    with app.app_context():
        db.create_all()

        # Admin account from the environment on first start
        admin_email = os.environ.get('ADMIN_EMAIL')
        admin_password = os.environ.get('ADMIN_PASSWORD')

        if admin_email and admin_password and not credentials.get_by_email(admin_email):
            credentials.create("Administrator", admin_email, admin_password,
                               role='admin', is_verified=True)
            logger.info(f'Admin user {admin_email} created.')

    def set_refresh_cookie(response, refresh_token):
        response.set_cookie(
            app.config["REFRESH_COOKIE_NAME"],
            refresh_token,
            max_age=int(app.config["REFRESH_TOKEN_EXPIRES"].total_seconds()),
            httponly=True,
            secure=app.config["REFRESH_COOKIE_SECURE"],
            samesite="Strict",
        )

    def client_meta():
        return ClientMeta(ip=request.remote_addr, user_agent=request.headers.get("User-Agent"))

    def body():
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    @app.route("/auth/register", methods=["POST"])
    def register():
        """
        Register a new user
        ---
        tags:
          - Authentication
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                name:
                  type: string
                  example: "Ann"
                email:
                  type: string
                  example: "ann@example.com"
                password:
                  type: string
                  example: "secret1"
        responses:
          201:
            description: User registered, verification email sent
          400:
            description: Email already registered or missing fields
          500:
            description: Verification email could not be sent
        """
        data = body()
        auth.register(data.get("name"), data.get("email"), data.get("password"))
        return jsonify({"message": "User registered. Please verify email."}), 201

    @app.route("/auth/login", methods=["POST"])
    def login():
        """
        Log in and open a session
        ---
        tags:
          - Authentication
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                email:
                  type: string
                  example: "ann@example.com"
                password:
                  type: string
                  example: "secret1"
        responses:
          200:
            description: Access token, refresh token and profile; refreshToken cookie set
            schema:
              type: object
              properties:
                token:
                  type: string
                refreshToken:
                  type: string
                user:
                  type: object
          400:
            description: Email and password required
          401:
            description: Invalid credentials
        """
        data = body()
        result = auth.login(data.get("email"), data.get("password"), client_meta())
        response = jsonify({
            "token": result.access_token,
            "refreshToken": result.refresh_token,
            "user": result.user
        })
        set_refresh_cookie(response, result.refresh_token)
        return response

    @app.route("/auth/logout", methods=["POST"])
    def logout():
        """
        Close the session of the bearer token
        ---
        tags:
          - Authentication
        security:
          - Bearer: []
        responses:
          200:
            description: Logged out, refreshToken cookie cleared
        """
        auth.logout(bearer_token())
        response = jsonify({"message": "Logged out successfully"})
        response.delete_cookie(
            app.config["REFRESH_COOKIE_NAME"],
            httponly=True,
            secure=app.config["REFRESH_COOKIE_SECURE"],
            samesite="Strict",
        )
        return response

    @app.route("/auth/password-reset-request", methods=["POST"])
    def request_password_reset():
        """
        Email a password reset link
        ---
        tags:
          - Password
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                email:
                  type: string
        responses:
          200:
            description: Reset email sent
          404:
            description: User not found
        """
        auth.request_password_reset(body().get("email"))
        return jsonify({"message": "Password reset email sent"})

    @app.route("/auth/password-reset/<token>", methods=["POST"])
    def reset_password(token):
        """
        Set a new password with a reset token
        ---
        tags:
          - Password
        parameters:
          - in: path
            name: token
            type: string
            required: true
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                password:
                  type: string
        responses:
          200:
            description: Password reset
          400:
            description: Invalid or expired reset token
        """
        auth.reset_password(token, body().get("password"))
        return jsonify({"message": "Password reset successfully"})

    @app.route("/auth/verify/<token>", methods=["GET"])
    def verify_email(token):
        """
        Confirm an email address
        ---
        tags:
          - Authentication
        parameters:
          - in: path
            name: token
            type: string
            required: true
        responses:
          200:
            description: Email verified
          400:
            description: Invalid or expired verification token
        """
        auth.verify_email(token)
        return jsonify({"message": "Email verified successfully"})

    @app.route("/auth/me", methods=["GET"])
    @auth_required
    def get_me():
        """
        Current user's profile
        ---
        tags:
          - Profile
        security:
          - Bearer: []
        responses:
          200:
            description: Profile without password
          401:
            description: Missing, invalid or expired token, or no live session
          404:
            description: User not found
        """
        return jsonify(auth.get_profile(g.user["user_id"]))

    @app.route("/auth/me", methods=["PUT"])
    @auth_required
    def update_me():
        """
        Update the current user's name
        ---
        tags:
          - Profile
        security:
          - Bearer: []
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                name:
                  type: string
        responses:
          200:
            description: Updated profile
          400:
            description: Name is required
          404:
            description: User not found
        """
        return jsonify(auth.update_profile(g.user["user_id"], body().get("name")))

    @app.route("/auth/change-password", methods=["POST"])
    @auth_required
    def change_password():
        """
        Change the current user's password
        ---
        tags:
          - Password
        security:
          - Bearer: []
        parameters:
          - name: body
            in: body
            required: true
            schema:
              type: object
              properties:
                currentPassword:
                  type: string
                newPassword:
                  type: string
        responses:
          200:
            description: Password changed
          400:
            description: New password too short
          401:
            description: Current password is incorrect
        """
        data = body()
        auth.change_password(g.user["user_id"], data.get("currentPassword"), data.get("newPassword"))
        return jsonify({"message": "Password changed successfully"})

    @app.route("/auth/refresh", methods=["POST"])
    def refresh():
        """
        Exchange a refresh token for a new token pair
        ---
        tags:
          - Authentication
        parameters:
          - name: body
            in: body
            required: false
            schema:
              type: object
              properties:
                refreshToken:
                  type: string
        responses:
          200:
            description: New access and refresh tokens; the old refresh token is spent
            schema:
              type: object
              properties:
                accessToken:
                  type: string
                refreshToken:
                  type: string
          401:
            description: Missing or invalid refresh token
        """
        token = body().get("refreshToken") or request.cookies.get(app.config["REFRESH_COOKIE_NAME"])
        pair = auth.refresh(token)
        response = jsonify({
            "accessToken": pair.access_token,
            "refreshToken": pair.refresh_token
        })
        set_refresh_cookie(response, pair.refresh_token)
        return response

    @app.route("/auth/unsubscribe", methods=["GET"])
    def unsubscribe():
        """
        Stop login notification emails
        ---
        tags:
          - Profile
        parameters:
          - in: query
            name: email
            type: string
            required: true
        responses:
          200:
            description: Unsubscribed
          400:
            description: Email is required
          404:
            description: User not found
        """
        auth.unsubscribe(request.args.get("email"))
        return jsonify({"message": "Unsubscribed successfully"})

    @app.route("/auth/admin/users/<user_id>/sessions", methods=["GET"])
    @admin_required
    def list_user_sessions(user_id):
        """
        Live sessions of a user
        ---
        tags:
          - Admin
        security:
          - Bearer: []
        parameters:
          - in: path
            name: user_id
            type: string
            required: true
        responses:
          200:
            description: Sessions with device metadata
          403:
            description: Admin access required
          404:
            description: User not found
        """
        return jsonify(auth.list_sessions(user_id))

    @app.cli.command("purge-sessions")
    def purge_sessions():
        """Delete sessions past their expiry grace window."""
        purged = session_store.purge_expired()
        print(f"Purged {purged} expired sessions.")

    @app.errorhandler(AuthError)
    def handle_auth_error(error):
        db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_exception(error):
        if isinstance(error, HTTPException):
            return jsonify({"error": error.name}), error.code
        db.session.rollback()
        logger.error(f"Unhandled exception: {str(error)}", exc_info=True)
        payload = {"error": "Internal server error"}
        if app.config["APP_ENV"] == "development":
            payload["message"] = str(error)
        return jsonify(payload), 500

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({"error": "Bad request"}), 400

    return app


if __name__ == "__main__":
    app = create_app()
    notifier = app.extensions["notifier"]
    notifier.verify()
    logger.info("Starting auth-service on port 5001")
    try:
        app.run(host="0.0.0.0", port=5001, debug=False)
    finally:
        notifier.close()
