#!/usr/bin/env python3
"""Generate the HMAC secret used to sign room join tokens."""

from __future__ import annotations

import argparse
import contextlib
import os
import re
import secrets
import sys
from pathlib import Path

DEFAULT_BYTE_LENGTH = 48
MIN_BYTE_LENGTH = 32
ENV_VAR_NAME = "ROOM_TOKEN_SECRET"


def generate_secret(byte_length: int = DEFAULT_BYTE_LENGTH) -> str:
    """Return a URL-safe secret built from *byte_length* random bytes."""

    if byte_length < MIN_BYTE_LENGTH:
        raise ValueError(f"HS256 secrets need at least {MIN_BYTE_LENGTH} bytes (got {byte_length})")
    return secrets.token_urlsafe(byte_length)


def read_env_value(path: Path, name: str = ENV_VAR_NAME) -> str | None:
    if not path.exists():
        return None
    pattern = re.compile(rf"^{re.escape(name)}=(.*)$")
    for line in path.read_text(encoding="utf-8").splitlines():
        match = pattern.match(line.strip())
        if match:
            return match.group(1).strip()
    return None


def write_env_value(path: Path, secret: str, name: str = ENV_VAR_NAME) -> bool:
    """Set *name* in the env file at *path*; returns ``True`` if a value was replaced."""

    entry = f"{name}={secret}"
    pattern = re.compile(rf"^{re.escape(name)}=")
    replaced = False
    lines: list[str] = []
    if path.exists():
        for line in path.read_text(encoding="utf-8").splitlines():
            if pattern.match(line):
                lines.append(entry)
                replaced = True
            else:
                lines.append(line)
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
    if not replaced:
        lines.append(entry)

    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    with contextlib.suppress(OSError):
        os.chmod(path, 0o600)
    return replaced


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--bytes", type=int, default=DEFAULT_BYTE_LENGTH, help="Random bytes in the secret.")
    parser.add_argument(
        "--env-file",
        type=Path,
        metavar="PATH",
        help=f"Write the secret into this env file as {ENV_VAR_NAME}.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Replace an existing secret in the env file (this invalidates issued tokens).",
    )
    parser.add_argument("--silent", action="store_true", help="Do not print the secret to stdout.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        secret = generate_secret(args.bytes)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    if args.env_file:
        existing = read_env_value(args.env_file)
        if existing and existing != "changeme" and not args.force:
            print(f"{args.env_file} already defines {ENV_VAR_NAME}; pass --force to rotate it.", file=sys.stderr)
            return 1
        replaced = write_env_value(args.env_file, secret)
        action = "Rotated" if replaced else "Added"
        print(f"{action} {ENV_VAR_NAME} in {args.env_file}.", file=sys.stderr)

    if not args.silent:
        print(secret)
    return 0


if __name__ == "__main__":
    sys.exit(main())
