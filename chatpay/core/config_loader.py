"""Configuration loading utilities."""

import os
from pathlib import Path
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv


DEFAULT_CURRENCIES = {
    "USDC": 9,
    "USDT": 6,
}


def load_config(path: str = "config/config.yaml") -> dict:
    """
    Load YAML configuration file from specified path and return as dictionary.

    Environment variables (from the process or a ``.env`` file at the project
    root) override secrets and deployment-specific values:
    ``API_BASE_URL`` overrides ``api.base_url``.

    Args:
        path: Configuration file path (default: config/config.yaml)

    Returns:
        Configuration dictionary with defaults filled in

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        ValueError: If configuration file is empty or invalid
    """
    # __file__ is chatpay/core/config_loader.py, project root is 3 levels up
    root_dir = Path(__file__).parent.parent.parent
    env_path = root_dir / '.env'
    if env_path.exists():
        load_dotenv(env_path)

    config_path = Path(path)
    if not config_path.is_absolute():
        config_path = root_dir / path

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file does not exist: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if not config:
        raise ValueError(f"Configuration file is empty or has invalid format: {path}")

    return validate_config(config)


def validate_config(config: dict) -> dict:
    """
    Validate configuration sections and fill in defaults.

    Args:
        config: Raw configuration dictionary

    Returns:
        The same dictionary, validated and completed

    Raises:
        ValueError: Configuration validation failed
    """
    config['api'] = _validate_api(config.get('api') or {})
    config['currencies'] = _validate_currencies(config.get('currencies'))

    offramp = config.setdefault('offramp', {}) or {}
    offramp.setdefault('destination_currency', 'USD')
    offramp.setdefault('destination_country', 'USA')
    offramp.setdefault('expiry_margin_seconds', 30)
    if offramp['expiry_margin_seconds'] < 0:
        raise ValueError("offramp.expiry_margin_seconds must be >= 0")
    config['offramp'] = offramp

    flows = config.setdefault('flows', {}) or {}
    flows.setdefault('timeout_seconds', 300)
    flows.setdefault('purge_interval_seconds', 60)
    if flows['timeout_seconds'] <= 0:
        raise ValueError("flows.timeout_seconds must be > 0")
    config['flows'] = flows

    batch = config.setdefault('batch', {}) or {}
    batch.setdefault('max_recipients', 20)
    if batch['max_recipients'] < 1:
        raise ValueError("batch.max_recipients must be >= 1")
    config['batch'] = batch

    rate_limit = config.setdefault('rate_limit', {}) or {}
    rate_limit.setdefault('max_requests', 30)
    rate_limit.setdefault('window_seconds', 60)
    config['rate_limit'] = rate_limit

    app = config.setdefault('app', {}) or {}
    app.setdefault('kyc_url', os.environ.get('KYC_URL', 'https://kyc.example.com'))
    app.setdefault('purpose_code', 'self')
    config['app'] = app

    logging_cfg = config.setdefault('logging', {}) or {}
    logging_cfg.setdefault('level', 'INFO')
    logging_cfg.setdefault('log_dir', None)
    logging_cfg.setdefault('log_filename', None)
    config['logging'] = logging_cfg

    return config


def _validate_api(api: dict) -> dict:
    """Validate the backend API section; ``API_BASE_URL`` wins over the file."""
    base_url = os.environ.get('API_BASE_URL') or api.get('base_url')
    if not base_url:
        raise ValueError("api.base_url is required (or set API_BASE_URL)")

    parsed = urlparse(base_url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValueError(f"Invalid api.base_url: {base_url}")

    api['base_url'] = base_url.rstrip('/')
    api.setdefault('timeout', 30.0)
    api.setdefault('verify_ssl', True)
    api.setdefault('http2', False)
    api.setdefault('proxy', None)
    return api


def _validate_currencies(currencies) -> dict:
    """Validate the currency -> decimals table."""
    if not currencies:
        return dict(DEFAULT_CURRENCIES)

    if not isinstance(currencies, dict):
        raise ValueError("currencies must be a mapping of currency code to decimals")

    validated = {}
    for code, decimals in currencies.items():
        if not isinstance(decimals, int) or isinstance(decimals, bool) or decimals < 0:
            raise ValueError(f"Currency '{code}' decimals must be a non-negative integer, current value: {decimals}")
        validated[str(code).upper()] = decimals
    return validated


def get_bot_token() -> str:
    """
    Read the Telegram bot token from the environment.

    Raises:
        ValueError: If TELEGRAM_BOT_TOKEN is not set
    """
    token = os.environ.get("TELEGRAM_BOT_TOKEN")
    if not token:
        raise ValueError("TELEGRAM_BOT_TOKEN environment variable not set")
    return token
