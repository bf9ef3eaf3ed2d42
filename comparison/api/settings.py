import os

from dotenv import load_dotenv

from comparison.api.errors import ConfigurationError
from comparison.api.periods import validate_anchor_day

load_dotenv()


def get_env_int(name: str, default: int | None = None) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        if default is None:
            raise ConfigurationError(f"Missing required environment variable: {name}")
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid integer for {name}: {raw}") from exc


def get_env_float(name: str, default: float | None = None) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        if default is None:
            raise ConfigurationError(f"Missing required environment variable: {name}")
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid float for {name}: {raw}") from exc


def get_billing_day() -> int:
    return validate_anchor_day(get_env_int("BILLING_DAY", default=1))


def get_manual_plan_window_days() -> int:
    days = get_env_int("MANUAL_PLAN_WINDOW_DAYS", default=365)
    if days <= 0:
        raise ConfigurationError("MANUAL_PLAN_WINDOW_DAYS must be greater than zero")
    return days


def get_validity_lookup_timeout() -> float:
    timeout = get_env_float("VALIDITY_LOOKUP_TIMEOUT_SECONDS", default=10.0)
    if timeout <= 0:
        raise ConfigurationError("VALIDITY_LOOKUP_TIMEOUT_SECONDS must be greater than zero")
    return timeout


def get_consumption_table() -> str:
    return os.getenv("CONSUMPTION_TABLE", "dbo.Consumption_Interval").strip() or "dbo.Consumption_Interval"


def resolve_sql_credentials() -> tuple[str, str, str]:
    ro_username = os.getenv("SQL_RO_USERNAME", "").strip()
    ro_password = os.getenv("SQL_RO_PASSWORD", "")
    if ro_username and ro_password:
        return ro_username, ro_password, "ro"

    return os.getenv("SQL_USERNAME", ""), os.getenv("SQL_PASSWORD", ""), "rw"


def get_sql_connection_string() -> str:
    username, password, _ = resolve_sql_credentials()
    return (
        "DRIVER={ODBC Driver 18 for SQL Server};"
        f"SERVER={os.getenv('SQL_SERVER', '')};"
        f"DATABASE={os.getenv('SQL_DATABASE', '')};"
        f"UID={username};"
        f"PWD={password};"
        "Encrypt=yes;"
        "TrustServerCertificate=no;"
        "Connection Timeout=15;"
    )


def get_consumption_interval_minutes() -> int:
    minutes = get_env_int("CONSUMPTION_INTERVAL_MINUTES", default=15)
    if minutes <= 0:
        raise ConfigurationError("CONSUMPTION_INTERVAL_MINUTES must be greater than zero")
    return minutes
