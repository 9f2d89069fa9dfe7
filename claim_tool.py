#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Sequential username claimer for an identity service with a hosted checkout.

For every account in accounts.txt and every generated candidate username:
  1. verify        POST <id-api>/verify            {"username"}
  2. order         POST <id-api>/order             {"email","username","years","currency","islite"}
  3. session id    last path segment of the checkout url returned by the order
  4. discount      POST <checkout>/<session>/discount                            {"code"}
  5. complete      POST <checkout>/<session>/mark-session-complete-for-zero-amount {}
     confirm       GET  successUrl (or <home>/<username>/claimed?cx_session_id=<session>)

Key features:
- Candidate generation: random a-z labels (deduplicated) or sequential base-26 enumeration
- One requests.Session, bearer auth per account, no retries, uniform result shape
- Early-exit workflow: any failed step skips the username, never the batch
- Append-only outputs: unavailable_usernames.txt (skip list across runs),
  registered_usernames.txt ("username,identifier")
- Every console line mirrored to log.txt
- Fixed pause between usernames (the only pacing applied)

Endpoints and the discount code come from the environment (or a .env file):
  CLAIM_ID_API_BASE, CLAIM_CHECKOUT_API_BASE, CLAIM_HOME_BASE, CLAIM_DISCOUNT_CODE,
  CLAIM_SUCCESS_PHRASE (the full literal the confirmation page must contain)
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import itertools
import json
import logging
import os
import random
import re
import sys
import time
import urllib.parse
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Set

import requests
from dotenv import load_dotenv
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


ALPHABET = "abcdefghijklmnopqrstuvwxyz"
ALPHABET_INDEX = {ch: i for i, ch in enumerate(ALPHABET)}
BASE = len(ALPHABET)  # 26

DEFAULT_USERNAME_LENGTH = 5
DEFAULT_CANDIDATES = 1000

DEFAULT_YEARS = 3
DEFAULT_CURRENCY = "usdc"

DISPLAYED_USERNAME_RE = re.compile(
    r'<p class="text-3xl font-instrumentSerif italic text-primary py-5">([a-zA-Z]+)<span'
)


# ---------------------------
# Data models
# ---------------------------

@dataclasses.dataclass(frozen=True)
class Account:
    identifier: str
    auth_header: str


@dataclasses.dataclass(frozen=True)
class RequestResult:
    succeeded: bool
    http_status: int
    body: Any
    raw: str


class Outcome(enum.Enum):
    REGISTERED = "registered"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclasses.dataclass
class RunStats:
    processed: int = 0
    skipped: int = 0
    registered: int = 0
    unavailable: int = 0
    failed: int = 0

    def add(self, outcome: Outcome) -> None:
        self.processed += 1
        if outcome is Outcome.REGISTERED:
            self.registered += 1
        elif outcome is Outcome.UNAVAILABLE:
            self.unavailable += 1
        else:
            self.failed += 1


@dataclasses.dataclass(frozen=True)
class Settings:
    id_api_base: str
    checkout_api_base: str
    home_base: str
    discount_code: str
    success_phrase: str
    years: int = DEFAULT_YEARS
    currency: str = DEFAULT_CURRENCY

    @property
    def verify_url(self) -> str:
        return f"{self.id_api_base.rstrip('/')}/verify"

    @property
    def order_url(self) -> str:
        return f"{self.id_api_base.rstrip('/')}/order"

    def discount_url(self, session_id: str) -> str:
        return f"{self.checkout_api_base.rstrip('/')}/{session_id}/discount"

    def complete_url(self, session_id: str) -> str:
        return f"{self.checkout_api_base.rstrip('/')}/{session_id}/mark-session-complete-for-zero-amount"

    def fallback_success_url(self, username: str, session_id: str) -> str:
        query = urllib.parse.urlencode({"cx_session_id": session_id})
        return f"{self.home_base.rstrip('/')}/{username}/claimed?{query}"


class AccountsFileError(ValueError):
    pass


# ---------------------------
# Accounts
# ---------------------------

def load_accounts(path: Path) -> List[Account]:
    """
    One account per line: <identifier>,<token>
    Blank lines are ignored; any other malformed line rejects the whole file.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise AccountsFileError(f"Error reading accounts from {path}: {e}") from e

    accounts: List[Account] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        parts = [p.strip() for p in line.split(",")]
        identifier = parts[0]
        token = parts[1] if len(parts) > 1 else ""
        if not identifier or not token:
            raise AccountsFileError(f"Invalid format in {path.name}: {line}")
        accounts.append(Account(identifier=identifier, auth_header=f"Bearer {token}"))

    if not accounts:
        raise AccountsFileError(f"No accounts found in {path.name}")
    return accounts


# ---------------------------
# Candidate usernames
# ---------------------------

def validate_label(label: str) -> None:
    if not label:
        raise ValueError("label is empty")
    for ch in label:
        if ch not in ALPHABET_INDEX:
            raise ValueError(f"Invalid label '{label}': character '{ch}' not in a-z")


def index_to_label(index: int, length: int) -> str:
    if length <= 0:
        raise ValueError("length must be > 0")
    if index < 0 or index >= BASE ** length:
        raise ValueError(f"index out of range for length={length}: {index}")
    chars = ["a"] * length
    x = index
    for pos in range(length - 1, -1, -1):
        x, rem = divmod(x, BASE)
        chars[pos] = ALPHABET[rem]
    return "".join(chars)


def label_to_index(label: str) -> int:
    validate_label(label)
    x = 0
    for ch in label:
        x = x * BASE + ALPHABET_INDEX[ch]
    return x


def iter_labels(length: int,
                start_label: Optional[str] = None,
                start_mode: str = "include") -> Iterator[str]:
    """Yield aaaaa, aaaab, ... for the given length, optionally from/after start_label."""
    begin = 0
    if start_label is not None:
        if len(start_label) != length:
            raise ValueError(f"start label '{start_label}' must have length {length}")
        if start_mode not in ("include", "after"):
            raise ValueError("start_mode must be 'include' or 'after'")
        begin = label_to_index(start_label) + (1 if start_mode == "after" else 0)

    for idx in range(begin, BASE ** length):
        yield index_to_label(idx, length)


def generate_usernames(count: int = DEFAULT_CANDIDATES,
                       length: int = DEFAULT_USERNAME_LENGTH,
                       rng: Optional[random.Random] = None) -> List[str]:
    # count draws, duplicates dropped, so the result may be shorter than count
    if length <= 0:
        raise ValueError("length must be > 0")
    rng = rng or random.Random()
    drawn = ("".join(rng.choice(ALPHABET) for _ in range(length)) for _ in range(count))
    return list(dict.fromkeys(drawn))


def sequential_usernames(count: int, length: int, start_label: Optional[str] = None) -> List[str]:
    return list(itertools.islice(iter_labels(length, start_label), count))


# ---------------------------
# Ledger (skip list + registered output)
# ---------------------------

class FileLedger:
    """
    unavailable file: one username per line, read once at startup, appended during the run
    registered file : username,identifier per line, append-only
    """

    def __init__(self,
                 unavailable_path: Path,
                 registered_path: Path,
                 logger: Optional[logging.Logger] = None):
        self.unavailable_path = unavailable_path
        self.registered_path = registered_path
        self.log = logger or logging.getLogger(__name__)

    def load_unavailable(self) -> Set[str]:
        if not self.unavailable_path.exists():
            return set()
        try:
            lines = self.unavailable_path.read_text(encoding="utf-8").splitlines()
        except (OSError, ValueError) as e:
            self.log.error("Error loading unavailable usernames from %s: %s", self.unavailable_path, e)
            return set()
        return {s.strip() for s in lines if s.strip()}

    def mark_unavailable(self, username: str) -> None:
        self._append(self.unavailable_path, f"{username}\n")

    def record_registered(self, username: str, identifier: str) -> None:
        self._append(self.registered_path, f"{username},{identifier}\n")

    @staticmethod
    def _append(path: Path, line: str) -> None:
        with path.open("a", encoding="utf-8", newline="\n") as f:
            f.write(line)


# ---------------------------
# HTTP client
# ---------------------------

def build_requests_session(timeout_s: float) -> requests.Session:
    """
    requests.Session without retries: a failed call is reported once and the
    workflow moves on to the next username.
    Every request gets timeout_s unless the caller passes its own; a timeout is a
    transport error, so it ends up as a soft failure like any other.
    """
    session = requests.Session()
    retry = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.request = _wrap_timeout(session.request, timeout_s)
    return session


def _wrap_timeout(func, timeout_s: float):
    def wrapped(*args, **kwargs):
        kwargs.setdefault("timeout", timeout_s)
        return func(*args, **kwargs)
    return wrapped


def parse_body(text: str) -> Any:
    if not text:
        return ""
    try:
        return json.loads(text)
    except ValueError:
        return text


class ClaimClient:
    def __init__(self, session: Optional[requests.Session] = None, timeout_s: float = 30.0):
        self.session = session or build_requests_session(timeout_s)

    def send(self,
             url: str,
             payload: Optional[dict] = None,
             auth_header: str = "",
             method: str = "POST") -> RequestResult:
        """Never raises: transport errors and non-2xx responses both come back as failures."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": auth_header,
        }
        try:
            resp = self.session.request(method, url, json=payload, headers=headers)
        except requests.RequestException as e:
            return RequestResult(
                succeeded=False,
                http_status=500,
                body={},
                raw=f"Network Error: {type(e).__name__}: {e}",
            )

        text = resp.text
        body = parse_body(text)
        if 200 <= resp.status_code < 300:
            return RequestResult(succeeded=True, http_status=resp.status_code, body=body, raw=text)
        return RequestResult(
            succeeded=False,
            http_status=resp.status_code,
            body=body if body != "" else {},
            raw=f"HTTP {resp.status_code}: {text}",
        )


# ---------------------------
# Workflow
# ---------------------------

class StepFailed(Exception):
    def __init__(self, message: str, unavailable: bool = False):
        super().__init__(message)
        self.unavailable = unavailable


def field(body: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(body, dict):
            return None
        body = body.get(key)
    return body


def is_number(value: Any, expected: int) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == expected


def is_zero_amount(value: Any) -> bool:
    return value == "0" or is_number(value, 0)


def extract_session_id(checkout_url: str) -> str:
    return checkout_url.split("/")[-1]


class RegistrationWorkflow:
    def __init__(self,
                 client: ClaimClient,
                 settings: Settings,
                 ledger: FileLedger,
                 delay_s: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep,
                 logger: Optional[logging.Logger] = None):
        self.client = client
        self.settings = settings
        self.ledger = ledger
        self.delay_s = delay_s
        self.sleep = sleep
        self.log = logger or logging.getLogger(__name__)

    def process(self, account: Account, username: str) -> Outcome:
        self.log.info("Processing %s with %s...", username, account.identifier)
        try:
            self.check_availability(account, username)
            checkout_url = self.place_order(account, username)
            session_id = extract_session_id(checkout_url)
            if not session_id:
                raise StepFailed(f"Session ID not found for {username}, skipping...")
            self.apply_discount(account, username, session_id)
            success_url = self.complete_zero_amount(account, username, session_id)
            self.confirm(account, username, success_url)
        except StepFailed as e:
            self.log.warning("%s", e)
            if e.unavailable:
                self.ledger.mark_unavailable(username)
            self.pause()
            return Outcome.UNAVAILABLE if e.unavailable else Outcome.FAILED

        self.log.info("%s successfully registered with %s and returned to Home.",
                      username, account.identifier)
        self.ledger.record_registered(username, account.identifier)
        self.pause()
        self.log.info("Moving to next username...")
        return Outcome.REGISTERED

    def pause(self) -> None:
        if self.delay_s > 0:
            self.sleep(self.delay_s)

    def check_availability(self, account: Account, username: str) -> None:
        r = self.client.send(self.settings.verify_url, {"username": username}, account.auth_header)
        # upstream answers some taken names with HTTP 500 and {"status": 0}
        quirk = r.http_status == 500 and is_number(field(r.body, "status"), 0)
        if not r.succeeded or quirk:
            raise StepFailed(f"{username} is not available, skipping... ({r.raw})", unavailable=True)

    def place_order(self, account: Account, username: str) -> str:
        payload = {
            "email": account.identifier,
            "username": username,
            "years": self.settings.years,
            "currency": self.settings.currency,
            "islite": False,
        }
        r = self.client.send(self.settings.order_url, payload, account.auth_header)
        if r.http_status != 200 or not is_number(field(r.body, "status"), 1):
            raise StepFailed(f"Registration failed for {username}: {r.raw}", unavailable=True)

        checkout_url = field(r.body, "data", "url")
        if not checkout_url or not isinstance(checkout_url, str):
            raise StepFailed(f"Checkout URL not found for {username}, skipping...")
        return checkout_url

    def apply_discount(self, account: Account, username: str, session_id: str) -> None:
        r = self.client.send(
            self.settings.discount_url(session_id),
            {"code": self.settings.discount_code},
            account.auth_header,
        )
        if r.http_status != 200:
            raise StepFailed(f"Discount apply failed for {username}: {r.raw}")

        amount = field(r.body, "amountTotal")
        if not is_zero_amount(amount):
            raise StepFailed(f"Discount apply failed for {username}: Amount due is {amount}")

    def complete_zero_amount(self, account: Account, username: str, session_id: str) -> str:
        r = self.client.send(self.settings.complete_url(session_id), {}, account.auth_header)
        if r.http_status != 200:
            raise StepFailed(f"Payment failed for {username}: {r.raw}")

        success_url = field(r.body, "successUrl")
        if not success_url:
            self.log.info("Success URL not found for %s, constructing manually...", username)
            success_url = self.settings.fallback_success_url(username, session_id)
        return success_url

    def confirm(self, account: Account, username: str, success_url: str) -> None:
        r = self.client.send(success_url, None, account.auth_header, method="GET")
        if r.http_status != 200:
            raise StepFailed(f"Failed to return to Home for {username}: {r.raw}")

        page = r.raw
        if self.settings.success_phrase not in page:
            raise StepFailed(f"Success message not found for {username}, registration might have failed.")

        m = DISPLAYED_USERNAME_RE.search(page)
        if m and m.group(1) != username:
            raise StepFailed(f"Username mismatch for {username}: Expected {username}, got {m.group(1)}")


# ---------------------------
# Batch driver
# ---------------------------

def run_batch(accounts: Sequence[Account],
              usernames: Iterable[str],
              skip: Set[str],
              workflow: RegistrationWorkflow,
              log: Optional[logging.Logger] = None) -> RunStats:
    log = log or logging.getLogger(__name__)
    usernames = list(usernames)
    stats = RunStats()

    for account in accounts:
        log.info("Starting registration process with email: %s", account.identifier)
        for username in usernames:
            # skip set is the startup snapshot; names marked during this run are retried by later accounts
            if username in skip:
                log.info("%s was previously unavailable, skipping...", username)
                stats.skipped += 1
                continue
            stats.add(workflow.process(account, username))
        log.info("Finished processing all usernames for %s. Moving to next account...", account.identifier)

    log.info(
        "All accounts processed successfully! processed=%s registered=%s unavailable=%s failed=%s skipped=%s",
        stats.processed, stats.registered, stats.unavailable, stats.failed, stats.skipped,
    )
    return stats


# ---------------------------
# CLI
# ---------------------------

def configure_logging(verbosity: int, log_file: Optional[Path] = None) -> logging.Logger:
    level = logging.INFO
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 0:
        level = logging.WARNING

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8", delay=True))

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
    return logging.getLogger("claim_tool")


def require_env(var: str) -> str:
    v = os.getenv(var, "").strip()
    if not v:
        raise SystemExit(f"Missing required environment variable: {var}")
    return v


def load_settings(args: argparse.Namespace) -> Settings:
    return Settings(
        id_api_base=require_env("CLAIM_ID_API_BASE"),
        checkout_api_base=require_env("CLAIM_CHECKOUT_API_BASE"),
        home_base=require_env("CLAIM_HOME_BASE"),
        discount_code=require_env("CLAIM_DISCOUNT_CODE"),
        success_phrase=require_env("CLAIM_SUCCESS_PHRASE"),
        years=args.years,
        currency=args.currency,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Try generated usernames against every account: verify, order, discount, complete, confirm.",
    )
    parser.add_argument("--accounts-file", default="accounts.txt", help="identifier,token per line (default: accounts.txt)")
    parser.add_argument("--unavailable-file", default="unavailable_usernames.txt",
                        help="Skip list, appended during the run (default: unavailable_usernames.txt)")
    parser.add_argument("--registered-file", default="registered_usernames.txt",
                        help="username,identifier per claimed name (default: registered_usernames.txt)")
    parser.add_argument("--log-file", default="log.txt", help="Mirror of console output (default: log.txt)")
    parser.add_argument("--count", type=int, default=DEFAULT_CANDIDATES, help="Candidates to generate (default: 1000)")
    parser.add_argument("--length", type=int, default=DEFAULT_USERNAME_LENGTH, help="Username length (default: 5)")
    parser.add_argument("--mode", choices=["random", "sequential"], default="random",
                        help="random draws (deduplicated) or base-26 enumeration (default: random)")
    parser.add_argument("--start-label", default=None, help="First label for --mode sequential, e.g. abaaa")
    parser.add_argument("--seed", type=int, default=None, help="Seed for --mode random")
    parser.add_argument("--delay", type=float, default=1.0, help="Pause after each username in seconds (default: 1.0)")
    parser.add_argument("--timeout-s", type=float, default=30.0, help="Per-request timeout (default: 30)")
    parser.add_argument("--years", type=int, default=DEFAULT_YEARS, help="Registration period (default: 3)")
    parser.add_argument("--currency", default=DEFAULT_CURRENCY, help="Order currency (default: usdc)")
    parser.add_argument("--dotenv", default=".env", help="Path to .env file (default: .env)")
    parser.add_argument("-v", "--verbose", action="count", default=1, help="Increase verbosity (use -vv for debug)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    log = configure_logging(args.verbose, Path(args.log_file))
    load_dotenv(dotenv_path=args.dotenv, override=False)

    if args.count < 1:
        raise SystemExit("--count must be >= 1")
    if args.length < 1:
        raise SystemExit("--length must be >= 1")
    if args.start_label is not None:
        try:
            validate_label(args.start_label)
        except ValueError as e:
            raise SystemExit(f"--start-label: {e}") from e
        if len(args.start_label) != args.length:
            raise SystemExit("--start-label must be --length characters long")

    settings = load_settings(args)

    try:
        accounts = load_accounts(Path(args.accounts_file))
    except AccountsFileError as e:
        log.error("%s", e)
        return 1

    ledger = FileLedger(Path(args.unavailable_file), Path(args.registered_file), logger=log)
    skip = ledger.load_unavailable()
    log.info("Loaded %s accounts, %s previously unavailable usernames", len(accounts), len(skip))

    if args.mode == "sequential":
        usernames = sequential_usernames(args.count, args.length, args.start_label)
    else:
        rng = random.Random(args.seed) if args.seed is not None else None
        usernames = generate_usernames(args.count, args.length, rng)
    log.debug("Candidates (%s): %s", len(usernames), usernames)

    workflow = RegistrationWorkflow(
        client=ClaimClient(timeout_s=args.timeout_s),
        settings=settings,
        ledger=ledger,
        delay_s=args.delay,
        logger=log,
    )
    run_batch(accounts, usernames, skip, workflow, log)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
