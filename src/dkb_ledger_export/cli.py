from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys
import time
from datetime import date, timedelta
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

from .banking.base import BankCredentials
from .client import BankingClient
from .config import AppConfig, load_config
from .errors import BankingError
from .logging_config import configure_logging
from .models import AccountSummary, MFAMethod
from .output import write_batch
from .surfaces import KNOWN_SURFACES
from .util.debug_bundle import create_debug_bundle
from .util.money import cents_to_money_str


logger = logging.getLogger("dkb_ledger_export")

DEBUG_DIR = "data/debug"
DEFAULT_LOOKBACK_DAYS = 90

# Exit codes
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROWS_SKIPPED = 3
EXIT_INTERRUPTED = 130


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dkb-ledger-export")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    accounts = sub.add_parser("accounts", help="Log in and list the accounts on the financial overview")
    accounts.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")

    tx = sub.add_parser("transactions", help="Log in and export transactions per account as CSV")
    tx.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    tx.add_argument("--from", dest="date_from", default="", help="First booking date (YYYY-MM-DD). Default: 90 days ago.")
    tx.add_argument("--to", dest="date_to", default="", help="Last booking date (YYYY-MM-DD). Default: today.")
    tx.add_argument(
        "--account",
        action="append",
        default=[],
        help="Only export this account (IBAN or masked card number). Repeatable. Default: every exportable account.",
    )
    tx.add_argument("--out-dir", default="", help="Where to write the CSV files (default: export.output_dir).")
    tx.add_argument(
        "--allow-skipped",
        action="store_true",
        help="Exit 0 even if some rows could not be decoded (they are still logged and left out of the CSV).",
    )

    sub.add_parser("list-surfaces", help="List the supported banking surfaces")

    return p


def _parse_day(raw: str, *, flag: str) -> date:
    try:
        return date.fromisoformat(raw.strip())
    except ValueError:
        raise SystemExit(f"{flag} must be YYYY-MM-DD (got {raw!r}).")


def _resolve_range(args: argparse.Namespace) -> tuple[date, date]:
    date_to = _parse_day(args.date_to, flag="--to") if args.date_to else date.today()
    date_from = _parse_day(args.date_from, flag="--from") if args.date_from else date_to - timedelta(days=DEFAULT_LOOKBACK_DAYS)
    if date_from > date_to:
        raise SystemExit(f"--from ({date_from}) is after --to ({date_to}).")
    return date_from, date_to


def _credentials(cfg: AppConfig) -> BankCredentials:
    username = cfg.bank.username
    password = cfg.bank.password
    if not username:
        if not sys.stdin.isatty():
            raise SystemExit("Missing DKB_USERNAME (set it in .env or the config file).")
        username = input("DKB username: ").strip()
    if not password:
        if not sys.stdin.isatty():
            raise SystemExit("Missing DKB_PASSWORD (set it in .env or the config file).")
        password = getpass.getpass("DKB password: ")
    return BankCredentials(username=username, password=password)


def _prompt_choice(prompt: str, *, min_value: int, max_value: int) -> int:
    while True:
        raw = input(prompt).strip()
        if not raw:
            continue
        if raw.lower() in {"q", "quit", "exit"}:
            raise SystemExit("Aborted.")
        if raw.isdigit():
            n = int(raw)
            if min_value <= n <= max_value:
                return n
        print(f"Enter a number from {min_value} to {max_value} (or 'q' to abort).")


def _prompt_mfa_device(methods: Sequence[MFAMethod]) -> int:
    print("Enrolled devices:")
    for i, m in enumerate(methods, start=1):
        flag = " (locked)" if m.locked else ""
        print(f"  {i}. {m.device_label or m.id}  enrolled {m.enrolled_at:%Y-%m-%d}{flag}")
    return _prompt_choice(f"Device to confirm the login on [1-{len(methods)}]: ", min_value=1, max_value=len(methods))


def _login(cfg: AppConfig) -> BankingClient:
    client = BankingClient.from_config(cfg, debug_dir=DEBUG_DIR)
    creds = _credentials(cfg)
    chooser = _prompt_mfa_device if cfg.mfa.selection == "prompt" else None
    client.login(creds, method_chooser=chooser, timeout_seconds=cfg.mfa.run_timeout_seconds)
    return client


def _format_account(a: AccountSummary) -> str:
    balance = cents_to_money_str(a.balance_cents, a.currency) if a.balance_cents is not None else "-"
    as_of = f" (as of {a.balance_as_of.isoformat()})" if a.balance_as_of else ""
    return f"{a.kind.value}\t{a.identifier}\t{a.display_name}\t{balance}{as_of}"


def _select_accounts(accounts: List[AccountSummary], wanted: Sequence[str]) -> List[AccountSummary]:
    if not wanted:
        return accounts
    norm = {w.replace(" ", "").upper() for w in wanted}
    picked = [a for a in accounts if a.identifier.replace(" ", "").upper() in norm]
    found = {a.identifier.replace(" ", "").upper() for a in picked}
    missing = sorted(norm - found)
    if missing:
        raise SystemExit(f"Unknown account(s): {', '.join(missing)}. Run `dkb-ledger-export accounts` to list them.")
    return picked


def _run_with_bundle(cfg: AppConfig, fn) -> int:
    try:
        return fn()
    except KeyboardInterrupt:
        print("Interrupted.")
        return EXIT_INTERRUPTED
    except Exception as e:
        if isinstance(e, BankingError):
            logger.error("Run failed: %s", e)
        # Auto-bundle debug artifacts + log for easy sharing.
        try:
            bundle = create_debug_bundle(
                debug_dir=DEBUG_DIR,
                log_file=cfg.logging.file_path or "data/export.log",
                out_dir="data",
                surface=cfg.bank.surface,
                error=e,
            )
            logger.error("Wrote debug bundle: %s", bundle)
        except Exception:
            logger.debug("Failed to create debug bundle.", exc_info=True)
        raise


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.cmd == "list-surfaces":
        # Print only; no config/env required.
        for k in sorted(KNOWN_SURFACES.keys()):
            info = KNOWN_SURFACES[k]
            print(f"{info.name}\t{info.display_name}\t{info.base_url}")
        return EXIT_OK

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    if args.cmd == "accounts":

        def _accounts() -> int:
            client = _login(cfg)
            accounts = client.list_accounts()
            if not accounts:
                print("No accounts found.")
                return EXIT_OK
            for a in accounts:
                print(_format_account(a))
            return EXIT_OK

        return _run_with_bundle(cfg, _accounts)

    if args.cmd == "transactions":
        date_from, date_to = _resolve_range(args)
        out_dir = args.out_dir or cfg.export.output_dir

        def _transactions() -> int:
            t0 = time.time()
            logger.info("Starting export (surface=%s from=%s to=%s)", cfg.bank.surface, date_from, date_to)
            client = _login(cfg)
            accounts = _select_accounts(client.list_accounts(), args.account)

            skipped_total = 0
            for account, batch in client.iter_exports(date_from, date_to, accounts):
                path = write_batch(account, batch, output_dir=out_dir, date_from=date_from, date_to=date_to)
                skipped_total += len(batch.skipped)
                print(f"{account.identifier}\t{len(batch.records)} transactions\t{path}")
                for s in batch.skipped:
                    print(f"  skipped line {s.line_number}: {s.error}")

            logger.info("Export finished (seconds=%.2f skipped_rows=%d)", time.time() - t0, skipped_total)
            if skipped_total and not args.allow_skipped:
                print(f"{skipped_total} row(s) could not be decoded; re-run with --allow-skipped to accept that.")
                return EXIT_ROWS_SKIPPED
            return EXIT_OK

        return _run_with_bundle(cfg, _transactions)

    raise AssertionError("Unhandled command")
