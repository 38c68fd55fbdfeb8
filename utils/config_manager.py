from typing import Any, Dict


class ConfigManager:
    def __init__(self, config: Dict[str, Any]):
        self.config = config

    def get(self, key: str, default: Any = None) -> Any:
        return self.config.get(key, default)

    def get_base_url(self, testnet: bool) -> str:
        api = self.config.get("BYBIT_API", {})
        if testnet:
            return api.get("testnet_url") or "https://api-testnet.bybit.com"
        return api.get("mainnet_url") or "https://api.bybit.com"

    def get_recv_window(self) -> int:
        return int(self.config.get("BYBIT_API", {}).get("recv_window", 5000))

    def get_http_timeout(self) -> float:
        return float(self.config.get("BYBIT_API", {}).get("timeout", 10))

    def get_closed_pnl_paging(self) -> tuple[int, int]:
        api = self.config.get("BYBIT_API", {})
        return int(api.get("closed_pnl_limit", 50)), int(api.get("closed_pnl_max_pages", 5))

    def get_market_fee_percentage(self) -> float:
        return float(self.config.get("FEES", {}).get("market_fee_percentage", 0.055))

    def get_limit_fee_percentage(self) -> float:
        return float(self.config.get("FEES", {}).get("limit_fee_percentage", 0.02))

    def get_close_fee_rate(self) -> float:
        return float(self.config.get("FEES", {}).get("close_fee_rate", 0.001))

    def get_default_instrument(self) -> Dict[str, float]:
        inst = self.config.get("DEFAULT_INSTRUMENT", {})
        return {
            "min_qty": float(inst.get("min_qty", 0.001)),
            "qty_step": float(inst.get("qty_step", 0.001)),
        }

    def get_db_path(self) -> str:
        return self.config.get("DATABASE", {}).get("path") or "data/alertbot.db"

    def get_webhook_bind(self) -> tuple[str, int]:
        hook = self.config.get("WEBHOOK", {})
        return hook.get("host") or "0.0.0.0", int(hook.get("port", 8080))

    def get_dedup_window(self) -> int:
        return int(self.config.get("DEDUP_WINDOW_SECONDS", 60))

    def get_default_max_risk(self) -> float:
        return float(self.config.get("DEFAULT_MAX_RISK", 10))

    def get_logging(self) -> Dict[str, Any]:
        return dict(self.config.get("LOGGING") or {})
