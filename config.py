import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in {"1", "true", "yes"}


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///approvals.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = True

    MAIL_SERVER = os.environ.get("SMTP_SERVER")
    MAIL_PORT = int(os.environ.get("SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("SMTP_USERNAME")
    MAIL_PASSWORD = os.environ.get("SMTP_PASSWORD")
    MAIL_USE_TLS = _env_flag("SMTP_USE_TLS", "true")
    MAIL_DEFAULT_SENDER = os.environ.get("SMTP_FROM_EMAIL")

    # What happens when no rule matches: "no_approval" or "default_approver"
    APPROVAL_NO_MATCH_POLICY = os.environ.get("APPROVAL_NO_MATCH_POLICY", "no_approval")
    APPROVAL_DEFAULT_APPROVER_ROLES = _env_list("APPROVAL_DEFAULT_APPROVER_ROLES", "MANAGER")
    # "manager" escalates to the approver's manager, "expire" expires the request
    APPROVAL_ESCALATION_POLICY = os.environ.get("APPROVAL_ESCALATION_POLICY", "manager")
    APPROVAL_DEFAULT_DUE_HOURS = (
        int(os.environ["APPROVAL_DEFAULT_DUE_HOURS"]) if os.environ.get("APPROVAL_DEFAULT_DUE_HOURS") else None
    )
    APPROVAL_LOCK_TIMEOUT_SECONDS = float(os.environ.get("APPROVAL_LOCK_TIMEOUT_SECONDS", 10))
    APPROVAL_REJECT_EQUAL_PRIORITY_RULES = _env_flag("APPROVAL_REJECT_EQUAL_PRIORITY_RULES")

    APPROVAL_NOTIFIERS = _env_list("APPROVAL_NOTIFIERS", "log")
    APPROVAL_WEBHOOK_URL = os.environ.get("APPROVAL_WEBHOOK_URL")
    APPROVAL_WEBHOOK_TIMEOUT = float(os.environ.get("APPROVAL_WEBHOOK_TIMEOUT", 5))
    APPROVAL_PAGE_SIZE = int(os.environ.get("APPROVAL_PAGE_SIZE", 20))


class DevelopmentConfig(Config):
    DEBUG = True


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    MAIL_SUPPRESS_SEND = True
    MAIL_DEFAULT_SENDER = "approvals@example.com"
    APPROVAL_NOTIFIERS = ["log"]
    APPROVAL_NO_MATCH_POLICY = "no_approval"
    APPROVAL_ESCALATION_POLICY = "manager"
    APPROVAL_DEFAULT_DUE_HOURS = None
    APPROVAL_LOCK_TIMEOUT_SECONDS = 5.0
    APPROVAL_REJECT_EQUAL_PRIORITY_RULES = False


class ProductionConfig(Config):
    DEBUG = False


config_by_name = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}
