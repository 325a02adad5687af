"""CLI entry point for multichat."""

from __future__ import annotations

import argparse
import asyncio
import sys

from multichat.ai.conversation import SlotConfig, parse_model_selection
from multichat.app import MultiChatApp
from multichat.config import AppConfig, load_config
from multichat.core.types import MAX_SLOTS, Provider
from multichat.errors import MultiChatError
from multichat.log import setup_logging
from multichat.security.crypto import generate_key
from multichat.storage.models import UserSettings


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="multichat",
        description="Multi-provider LLM dispatch with token metering and billing",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_config_args(subparsers.add_parser("config-check", help="Validate configuration"))
    _add_config_args(subparsers.add_parser("model-info", help="Show provider configuration"))
    _add_config_args(subparsers.add_parser("init-db", help="Create the database schema"))
    subparsers.add_parser("generate-key", help="Print a new 64-hex-char encryption key")

    key_parser = subparsers.add_parser("set-key", help="Store (or clear) a user's provider API key")
    _add_config_args(key_parser)
    key_parser.add_argument("user", help="User id")
    key_parser.add_argument("provider", help="openai | anthropic | gemini")
    key_parser.add_argument("api_key", nargs="?", help="API key; omit with --clear")
    key_parser.add_argument("--clear", action="store_true", help="Remove the stored key")

    slot_parser = subparsers.add_parser("set-models", help="Save slot and summary model selections")
    _add_config_args(slot_parser)
    slot_parser.add_argument("user", help="User id")
    slot_parser.add_argument(
        "--slot", action="append", default=[], metavar="N=PROVIDER:MODEL", help="Slot selection (repeatable)"
    )
    slot_parser.add_argument("--summary", metavar="PROVIDER:MODEL", help="Summary model")
    slot_parser.add_argument(
        "--provided-keys", choices=["on", "off"], help="Bill calls to platform keys instead of the user's own"
    )

    ask_parser = subparsers.add_parser("ask", help="Send a prompt to every configured slot")
    _add_config_args(ask_parser)
    ask_parser.add_argument("user", help="User id")
    ask_parser.add_argument("prompt", help="Prompt text")
    ask_parser.add_argument("-i", "--interaction", help="Continue an existing interaction")
    ask_parser.add_argument(
        "--slot", action="append", default=[], metavar="N=PROVIDER:MODEL", help="Override slots (repeatable)"
    )
    ask_parser.add_argument("--summarize", action="store_true", help="Update the interaction summary afterwards")

    usage_parser = subparsers.add_parser("usage", help="Show balance and recent token usage")
    _add_config_args(usage_parser)
    usage_parser.add_argument("user", help="User id")
    usage_parser.add_argument("-n", "--limit", type=int, default=20, help="Number of log rows")

    args = parser.parse_args()

    match args.command:
        case "config-check":
            _check_config(args.config, args.env)
        case "model-info":
            _model_info(args.config, args.env)
        case "generate-key":
            print(generate_key())
        case "init-db" | "set-key" | "set-models" | "ask" | "usage":
            config = _load_or_exit(args.config, args.env)
            setup_logging(config.log_level, config.log_format)
            asyncio.run(_run_command(config, args))
        case _:
            parser.print_help()


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load_or_exit(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory: {config.data_dir}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Free allowance: {config.billing.free_allowance} tokens every {config.billing.free_reset_days} days")
    print(f"  Price ids mapped: {len(config.billing.price_tokens)}")
    print(f"  Stripe webhook secret: {'set' if config.billing.webhook_secret else 'missing'}")
    for provider in Provider:
        platform_key = config.providers.for_provider(provider).api_key
        print(f"  {provider.label}: platform key {'set' if platform_key else 'missing'}")


def _model_info(config_path: str, env_path: str) -> None:
    """Show per-provider call settings."""
    config = _load_or_exit(config_path, env_path)

    print("Provider Configuration")
    print("=" * 50)
    for provider in Provider:
        cfg = config.providers.for_provider(provider)
        print(f"\n  Provider: {provider.label} ({provider.value})")
        print(f"    Base URL   : {cfg.base_url or '(default)'}")
        print(f"    Timeout    : {cfg.timeout}s")
        print(f"    Max output : {cfg.max_output_tokens}")
    print(f"\n  Dispatch timeout : {config.dispatch.timeout}s")
    print(f"  Chars per token  : {config.dispatch.chars_per_token}")
    print()


def _parse_slot_args(values: list[str]) -> dict[int, str]:
    selections: dict[int, str] = {}
    for value in values:
        number, sep, selection = value.partition("=")
        if not sep or not number.strip().isdigit():
            raise ValueError(f"slot must look like N=provider:model, got {value!r}")
        slot_number = int(number)
        if not 1 <= slot_number <= MAX_SLOTS:
            raise ValueError(f"slot number must be 1..{MAX_SLOTS}, got {slot_number}")
        parse_model_selection(selection)
        selections[slot_number] = selection.strip()
    return selections


async def _run_command(config: AppConfig, args: argparse.Namespace) -> None:
    app = MultiChatApp(config)
    await app.start(background=False)
    try:
        match args.command:
            case "init-db":
                print(f"Database ready: {config.storage.db_path}")
            case "set-key":
                await _set_key(app, args)
            case "set-models":
                await _set_models(app, args)
            case "ask":
                await _ask(app, args)
            case "usage":
                await _usage(app, args)
    except (MultiChatError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await app.stop()


async def _set_key(app: MultiChatApp, args: argparse.Namespace) -> None:
    provider = Provider.parse(args.provider)
    if args.clear:
        await app.vault.clear_credential(args.user, provider)
        print(f"Cleared {provider.label} key for {args.user}")
        return
    if not args.api_key:
        raise ValueError("api_key is required unless --clear is given")
    await app.vault.store_credential(args.user, provider, args.api_key)
    print(f"Stored {provider.label} key for {args.user}")


async def _set_models(app: MultiChatApp, args: argparse.Namespace) -> None:
    settings = await app.settings_repo.get(args.user) or UserSettings(user_id=args.user)
    settings.slot_models.update(_parse_slot_args(args.slot))
    if args.summary:
        parse_model_selection(args.summary)
        settings.summary_model = args.summary
    if args.provided_keys:
        settings.use_provided_keys = args.provided_keys == "on"
    await app.settings_repo.save(settings)
    for slot_number, selection in sorted(settings.slot_models.items()):
        print(f"  Slot {slot_number}: {selection}")
    print(f"  Summary: {settings.summary_model or '(none)'}")
    print(f"  Provided keys: {'on' if settings.use_provided_keys else 'off'}")


async def _ask(app: MultiChatApp, args: argparse.Namespace) -> None:
    overrides = _parse_slot_args(args.slot)
    if overrides:
        slots = []
        for slot_number, selection in sorted(overrides.items()):
            provider, model = parse_model_selection(selection)
            slots.append(SlotConfig(slot_number=slot_number, provider=provider, model=model))
        outcome = await app.dispatcher.dispatch(args.user, args.prompt, slots, interaction_id=args.interaction)
    else:
        outcome = await app.ask(args.user, args.prompt, interaction_id=args.interaction)

    print(f"Interaction: {outcome.interaction_id}")
    for slot in outcome.slots:
        print()
        print(f"[Slot {slot.slot_number}] {slot.model_used}  (in={slot.input_tokens}, out={slot.output_tokens})")
        print("-" * 50)
        if slot.ok:
            print(slot.response_text)
        else:
            print(f"Error ({slot.error_code}): {slot.error}")

    if args.summarize:
        summary = await app.summary.summarize(args.user, outcome.interaction_id)
        print()
        print("Summary")
        print("=" * 50)
        print(summary)


async def _usage(app: MultiChatApp, args: argparse.Namespace) -> None:
    report = await app.ledger.usage_report(args.user, limit=args.limit)
    balance = report.balance
    print(f"Balance for {args.user}")
    print(f"  Free remaining : {balance.free_remaining}")
    print(f"  Paid remaining : {balance.paid_remaining}")
    print(f"  Total used     : {balance.total_used_overall}")
    for key_type, total in report.totals.items():
        print(f"  Used ({key_type.value} keys): {total}")
    print()
    for entry in report.entries:
        print(
            f"  {entry.created_at:%Y-%m-%d %H:%M}  {entry.provider:<9} {entry.model:<28} "
            f"{entry.total_tokens:>8}  {entry.key_type.value}"
        )


if __name__ == "__main__":
    main()
