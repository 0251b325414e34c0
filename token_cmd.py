#!/usr/bin/env python3
"""
Token command: print the access or refresh token held by the saved session.

Without options the compact token is printed as is. --header, --payload and
--signature print the corresponding decoded part instead. The signature is
never verified; this is a debugging aid, not a validator.

Usage:
    python token_cmd.py [--header | --payload | --signature] [--refresh]
"""
from __future__ import annotations

import argparse
import base64
import enum
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Sequence, TextIO, Tuple

import dump
from auth import AuthConfig, CredentialResolver
from errors import (
    ConfigurationError,
    MalformedTokenError,
    RenderError,
    SessionExpiredError,
    TokenCommandError,
)

logger = logging.getLogger("ocm_token.cmd")
logging.getLogger("ocm_token").addHandler(logging.NullHandler())

SEGMENT_NAMES = ("header", "payload", "signature")
_BASE64URL = re.compile(r"[A-Za-z0-9_-]+")


class DisplayMode(enum.Enum):
    FULL = "full"
    HEADER = "header"
    PAYLOAD = "payload"
    SIGNATURE = "signature"


class TokenKind(enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"


# -------------------------
# Logger setup
# -------------------------


def setup_logging(config: AuthConfig, debug: bool = False) -> None:
    root = logging.getLogger("ocm_token")
    root.setLevel(logging.DEBUG)
    if any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_file = Path(config.get("log_file"))
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            str(log_file),
            maxBytes=int(config.get("log_max_bytes")),
            backupCount=int(config.get("log_backup_count")),
        )
    except OSError as e:
        raise ConfigurationError(f"Can't open log file {log_file}: {e}") from e
    fh.setLevel(logging.DEBUG if debug else logging.INFO)
    fh.setFormatter(fmt)

    # stderr only, stdout is reserved for the token
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if debug else logging.WARNING)
    ch.setFormatter(fmt)

    root.addHandler(fh)
    root.addHandler(ch)


# -------------------------
# Core
# -------------------------


def validate_mode(header: bool = False, payload: bool = False, signature: bool = False) -> DisplayMode:
    count = sum(1 for flag in (header, payload, signature) if flag)
    if count > 1:
        raise ConfigurationError("Options '--payload', '--header' and '--signature' are mutually exclusive")
    if header:
        return DisplayMode.HEADER
    if payload:
        return DisplayMode.PAYLOAD
    if signature:
        return DisplayMode.SIGNATURE
    return DisplayMode.FULL


def select_token(kind: TokenKind, access_token: str, refresh_token: str) -> str:
    if kind is TokenKind.REFRESH:
        return refresh_token
    return access_token


def _decode_segment(segment: str, name: str) -> bytes:
    # unpadded base64url: a remainder of 1 can't come from any byte string
    if not _BASE64URL.fullmatch(segment) or len(segment) % 4 == 1:
        raise MalformedTokenError(f"Can't decode {name}: not valid unpadded base64url", segment=name)
    try:
        return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except ValueError as e:
        raise MalformedTokenError(f"Can't decode {name}: {e}", segment=name) from e


def decode_token(token: str) -> Tuple[bytes, bytes, bytes]:
    """
    Split a compact token into its header, payload and signature bytes.

    Nothing is verified and nothing is parsed; the caller gets raw bytes.

    Raises:
        MalformedTokenError: wrong number of segments, empty segment or a
            segment that isn't unpadded base64url
    """
    segments = token.split(".")
    if len(segments) != 3:
        raise MalformedTokenError(f"Can't parse token: expected 3 segments, got {len(segments)}")
    for name, segment in zip(SEGMENT_NAMES, segments):
        if not segment:
            raise MalformedTokenError(f"Can't parse token: {name} segment is empty", segment=name)

    header, payload, signature = (
        _decode_segment(segment, name) for name, segment in zip(SEGMENT_NAMES, segments)
    )
    return header, payload, signature


def render(
    mode: DisplayMode,
    stream: TextIO,
    token: str,
    parts: Optional[Tuple[bytes, bytes, bytes]] = None,
) -> None:
    if mode is DisplayMode.FULL:
        stream.write(f"{token}\n")
        return

    if parts is None:
        parts = decode_token(token)
    data = dict(zip(SEGMENT_NAMES, parts))[mode.value]
    try:
        dump.pretty(stream, data)
    except Exception as e:
        raise RenderError(f"Can't dump {mode.value}: {e}", part=mode.value) from e


def run(
    mode: DisplayMode,
    kind: TokenKind,
    resolver: CredentialResolver,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Load the session, obtain fresh tokens, print the selected one and save
    the session with the tokens that were just resolved.
    """
    if stream is None:
        stream = sys.stdout
    session = resolver.load_session()

    if not resolver.is_armed(session):
        raise SessionExpiredError("Tokens have expired, run the 'login' command")

    access_token, refresh_token = resolver.resolve_tokens(session)
    selected = select_token(kind, access_token, refresh_token)
    if not selected:
        raise MalformedTokenError(f"Can't parse token: the session has no {kind.value} token")
    logger.debug("Selected %s token (prefix): %s...", kind.value, selected[:10])

    parts = None
    if mode is not DisplayMode.FULL:
        parts = decode_token(selected)
    render(mode, stream, selected, parts)

    # both tokens are written back, whichever one was displayed
    session.access_token = access_token
    session.refresh_token = refresh_token
    resolver.save_session(session)


# -------------------------
# CLI runner
# -------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ocm-token",
        description="Uses the stored credentials to generate a token.",
    )
    parser.add_argument("--header", action="store_true", help="Print the JSON header.")
    parser.add_argument("--payload", action="store_true", help="Print the JSON payload.")
    parser.add_argument("--signature", action="store_true", help="Print the signature.")
    parser.add_argument(
        "--refresh", action="store_true", help="Print the refresh token instead of the access token."
    )
    parser.add_argument("--settings", default="settings.yaml", help="Path to settings.yaml")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on stderr")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        mode = validate_mode(args.header, args.payload, args.signature)
        kind = TokenKind.REFRESH if args.refresh else TokenKind.ACCESS

        config = AuthConfig(args.settings)
        setup_logging(config, args.debug)

        run(mode, kind, CredentialResolver(config))
    except TokenCommandError as e:
        # console gets the print below, the log file gets this
        logger.info("Token command failed: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
