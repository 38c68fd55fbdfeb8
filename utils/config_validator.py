from core.exceptions import ConfigError


def validate_config(config: dict):
    required_keys = [
        "BYBIT_API",
        "FEES",
        "DATABASE",
        "WEBHOOK",
    ]

    missing = [k for k in required_keys if k not in config or not config[k]]
    if missing:
        raise ConfigError(f"Missing required configuration keys: {missing}")

    for key in ("BYBIT_API", "FEES", "DATABASE", "WEBHOOK"):
        if not isinstance(config[key], dict):
            raise ConfigError(f"{key} must be a dictionary.")

    api = config["BYBIT_API"]
    if not api.get("mainnet_url") or not api.get("testnet_url"):
        raise ConfigError("BYBIT_API needs both mainnet_url and testnet_url.")

    for name in ("recv_window", "timeout"):
        if float(api.get(name, 0)) <= 0:
            raise ConfigError(f"BYBIT_API.{name} must be positive.")

    for name, value in config["FEES"].items():
        if float(value) < 0:
            raise ConfigError(f"FEES.{name} must not be negative.")

    if int(config.get("DEDUP_WINDOW_SECONDS", 60)) <= 0:
        raise ConfigError("DEDUP_WINDOW_SECONDS must be positive.")

    logging_conf = config.get("LOGGING") or {}
    if not isinstance(logging_conf, dict):
        raise ConfigError("LOGGING must be a dictionary.")
    for name in ("max_mb", "backups"):
        if name in logging_conf and int(logging_conf[name]) < 0:
            raise ConfigError(f"LOGGING.{name} must not be negative.")
