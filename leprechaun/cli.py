"""Command line entry point.

Usage:
    leprechaun run --config config.yaml
    leprechaun init-config config.yaml
    leprechaun set-credentials --key-id ID --key-secret SECRET
"""
import argparse
import sys
from pathlib import Path
from typing import List, Optional

from .cancellation import CancellationToken
from .config import BotConfig
from .logging_setup import logger, setup_logging
from .secrets import save_config
from .session import SessionContext, SessionController, luno_gateway_factory


def load_config(path: Optional[str]) -> BotConfig:
    if path:
        return BotConfig.from_yaml(path)
    return BotConfig()


def cmd_run(args) -> int:
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError, TypeError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    persistence = config.persistence
    setup_logging(
        log_file=persistence.log_file,
        level=args.log_level or persistence.log_level,
        enable_console=persistence.verbose,
    )
    logger.info(
        f"Starting Leprechaun | assets={','.join(config.trade.assets)} currency={config.exchange.currency} "
        f"unit={config.trade.purchase_unit} margin={config.trade.profit_margin} mode={config.trade.trading_mode.value}"
    )

    cancel = CancellationToken()
    context = SessionContext(config, luno_gateway_factory(config, args.credentials, cancel), cancel=cancel)
    controller = SessionController(context)
    thread = controller.start()
    try:
        while thread.is_alive():
            thread.join(0.5)
    except KeyboardInterrupt:
        logger.info("Interrupted; waiting for the current step to finish")
        controller.stop(timeout=args.stop_timeout)
    return 1 if controller.error else 0


def cmd_init_config(args) -> int:
    out = Path(args.output)
    if out.exists() and not args.force:
        print(f"{out} already exists; use --force to overwrite", file=sys.stderr)
        return 1
    BotConfig().to_yaml(str(out))
    print(f"Wrote default configuration to {out}")
    return 0


def cmd_set_credentials(args) -> int:
    path = args.path or str(Path.home() / ".luno_config.json")
    save_config(path, args.key_id, args.key_secret)
    print(f"Saved credentials to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="leprechaun", description="Leprechaun Luno trading bot")
    sub = parser.add_subparsers(dest="cmd")

    run = sub.add_parser("run", help="Start a trading session")
    run.add_argument("--config", help="Path to YAML config (defaults are used when omitted)")
    run.add_argument("--credentials", help="Path to the Luno credentials JSON file")
    run.add_argument("--log-level", help="Override the configured log level")
    run.add_argument("--stop-timeout", type=float, default=30.0, help="Seconds to wait for a clean stop")
    run.set_defaults(func=cmd_run)

    init = sub.add_parser("init-config", help="Write a default configuration file")
    init.add_argument("output")
    init.add_argument("--force", action="store_true")
    init.set_defaults(func=cmd_init_config)

    creds = sub.add_parser("set-credentials", help="Store Luno API credentials in a JSON file")
    creds.add_argument("--key-id", required=True)
    creds.add_argument("--key-secret", required=True)
    creds.add_argument("--path", help="Defaults to ~/.luno_config.json")
    creds.set_defaults(func=cmd_set_credentials)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
