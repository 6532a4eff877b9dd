"""
Kilimo AI - Land Degradation Monitoring & Restoration Planning
Application factory
"""

import os
import logging
from datetime import timedelta

from flask import Flask, jsonify
from flask_mail import Mail
from dotenv import load_dotenv

load_dotenv()

mail = Mail()

logger = logging.getLogger(__name__)


def _env_flag(name, default='false'):
    return os.getenv(name, default).strip().lower() == 'true'


def create_app(test_config=None):
    app = Flask(__name__)

    # -------------------------------
    #  Basic Configuration
    # -------------------------------
    app.secret_key = os.getenv("SECRET_KEY", "dev-key-please-change-this-in-production")

    app.config.update(
        APP_ENV=os.getenv("APP_ENV", "production"),
        SITE_URL=os.getenv("SITE_URL", "http://localhost:5000"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
        PERMANENT_SESSION_LIFETIME=timedelta(days=7),
        SESSION_COOKIE_SECURE=_env_flag("SESSION_COOKIE_SECURE"),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE='Lax',
    )

    # -------------------------------
    #  Supabase Configuration
    # -------------------------------
    app.config.update(
        SUPABASE_URL=os.getenv("SUPABASE_URL"),
        SUPABASE_ANON_KEY=os.getenv("SUPABASE_ANON_KEY"),
        SUPABASE_SERVICE_ROLE_KEY=os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
        SUPABASE_WEBHOOK_SECRET=os.getenv("SUPABASE_WEBHOOK_SECRET"),
        SESSION_REFRESH_TIMEOUT=float(os.getenv("SESSION_REFRESH_TIMEOUT", 5)),
    )

    # -------------------------------
    #  Demo Accounts
    # -------------------------------
    app.config.update(
        ALLOW_DEMO=_env_flag("ALLOW_DEMO"),
        ALLOW_AUTO_CONFIRM=_env_flag("ALLOW_AUTO_CONFIRM"),
        DEMO_EMAIL=os.getenv("DEMO_EMAIL"),
        DEMO_PASSWORD=os.getenv("DEMO_PASSWORD"),
    )

    # -------------------------------
    #  AI Configuration
    # -------------------------------
    app.config.update(
        AI_API_KEY=os.getenv("AI_API_KEY") or os.getenv("OPENAI_API_KEY"),
        AI_BASE_URL=os.getenv("AI_BASE_URL"),
        AI_MODEL=os.getenv("AI_MODEL", "gpt-4o-mini"),
        AI_TEMPERATURE=float(os.getenv("AI_TEMPERATURE", 0.7)),
        AI_MAX_TOKENS=int(os.getenv("AI_MAX_TOKENS", 1500)),
    )

    # -------------------------------
    #  Uploads
    # -------------------------------
    app.config.update(
        UPLOAD_BUCKET=os.getenv("UPLOAD_BUCKET", "uploads"),
        MAX_CONTENT_LENGTH=int(os.getenv("MAX_CONTENT_LENGTH", 25 * 1024 * 1024)),
    )

    # -------------------------------
    #  Email Configuration
    # -------------------------------
    app.config.update(
        MAIL_SERVER=os.getenv("MAIL_SERVER", "smtp.gmail.com"),
        MAIL_PORT=int(os.getenv("MAIL_PORT", 587)),
        MAIL_USE_TLS=True,
        MAIL_USERNAME=os.getenv("MAIL_USERNAME"),
        MAIL_PASSWORD=os.getenv("MAIL_PASSWORD"),
        MAIL_DEFAULT_SENDER=os.getenv("MAIL_SENDER_EMAIL"),
    )

    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

    # -------------------------------
    #  Initialize Extensions
    # -------------------------------
    mail.init_app(app)

    from kilimo.session import init_session
    init_session(app)

    # -------------------------------
    #  Register Modules
    # -------------------------------
    from kilimo.notifications import notifications_bp, init_notifications
    from kilimo.routes import auth_bp
    from kilimo.accounts import accounts_bp, init_accounts
    from kilimo.monitoring import monitoring_bp, init_monitoring
    from kilimo.projects import projects_bp, init_projects
    from kilimo.uploads import uploads_bp, init_uploads
    from kilimo.export import export_bp
    from kilimo.recommendations import recommendations_bp, init_recommendations
    from kilimo.insights import insights_bp
    from kilimo.dashboard import dashboard_bp
    from kilimo.planner import planner_bp

    init_notifications(app)
    init_accounts(app)
    init_monitoring(app)
    init_projects(app)
    init_uploads(app)
    init_recommendations(app)

    for blueprint in (notifications_bp, auth_bp, accounts_bp, monitoring_bp,
                      projects_bp, uploads_bp, export_bp, recommendations_bp,
                      insights_bp, dashboard_bp, planner_bp):
        app.register_blueprint(blueprint)
        logger.debug(f"✅ {blueprint.name} module loaded")

    # -------------------------------
    #  Health & Error Handlers
    # -------------------------------
    @app.route('/api/health')
    def health_check():
        return jsonify({'status': 'ok'})

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'success': False, 'error': 'Not Found'}), 404

    @app.errorhandler(413)
    def too_large(error):
        return jsonify({'success': False, 'error': 'File is too large'}), 413

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({'success': False, 'error': 'Internal server error'}), 500

    logger.info("🌿 Kilimo AI initialized")
    return app
