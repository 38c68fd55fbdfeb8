import argparse

from aiohttp import web

from core.initialization import initialize_components, load_configuration
from core.webhook_server import create_app
from utils.config_validator import validate_config
from utils.logger import setup_logger


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Alert-driven Bybit trading bot")
    parser.add_argument("--env", default="config.env", help="Path to the .env-style config file")
    parser.add_argument("--host", default=None, help="Override WEBHOOK_HOST")
    parser.add_argument("--port", type=int, default=None, help="Override WEBHOOK_PORT")
    parser.add_argument(
        "--sweep",
        action="store_true",
        help="Reconcile closed trades that still carry estimated PnL, then exit",
    )
    parser.add_argument("--sweep-limit", type=int, default=100)
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> None:
    """
    Entrypoint for the webhook service.

    Loads and validates configuration, wires the components and then either
    serves webhooks until interrupted or runs one reconciliation sweep.
    """
    config = load_configuration(args.env)
    validate_config(config)

    logger = setup_logger("AlertBot", to_console=True)
    components = initialize_components(config, {"logger": logger})

    if args.sweep:
        outcomes = components["reconciliation_worker"].sweep(args.sweep_limit)
        for outcome in outcomes:
            logger.info("Reconcile %s: %s %s", outcome.trade_id, outcome.status, outcome.message)
        logger.info("✅ Sweep finished, %d trade(s) checked", len(outcomes))
        return

    host, port = components["config"].get_webhook_bind()
    host = args.host or host
    port = args.port or port
    logger.info("🚀 Listening for alerts on http://%s:%s/webhook/{bot_id}", host, port)
    web.run_app(create_app(components), host=host, port=port, print=None)


def main():
    try:
        run(parse_args())
    except Exception as e:
        print(f"❌ Bot terminated due to error: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
