from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable

from dotenv import dotenv_values, set_key

from cloudflare_dyndns.config import APP_DIR_NAME
from cloudflare_dyndns.ip_resolver import DEFAULT_IP_SERVICES, IpDetector

# (env key, prompt, default written to a new file)
QUESTIONS = [
    ("API_TOKEN", "Cloudflare API Token", None),
    ("ZONE_ID", "Cloudflare Zone ID (leave blank to auto-detect)", None),
    ("RECORD_ID", "DNS Record ID (leave blank to auto-detect)", None),
    ("DOMAIN", "Domain (e.g., example.com)", None),
    ("SUBDOMAIN", "Subdomain (e.g., wireguard)", None),
    ("TTL", "TTL in seconds", "120"),
    ("PROXIED", "Enable Cloudflare proxy? (true/false)", "false"),
]

NEW_FILE_DEFAULTS = {
    "RETRY_ATTEMPTS": "3",
    "RETRY_DELAY": "5000",
    "IP_SERVICES": ",".join(DEFAULT_IP_SERVICES),
    "CHECK_INTERVAL": "60000",
    "ADAPTIVE_INTERVAL": "true",
}


def default_env_file() -> Path:
    return Path.home() / f".{APP_DIR_NAME}" / ".env"


def _ask(prompt: Callable[[str], str], label: str, current: str | None) -> str:
    suffix = f" [{current}]" if current else ""
    return prompt(f"{label}{suffix}: ").strip()


def run_setup(
    env_file: Path | None = None,
    prompt: Callable[[str], str] = input,
    detector: IpDetector | None = None,
) -> int:
    env_file = env_file or default_env_file()
    print("Cloudflare DynDNS Setup")
    print("=======================")

    existing = {key: value for key, value in dotenv_values(env_file).items() if value} if env_file.is_file() else {}
    if existing:
        print(f"Editing existing configuration at {env_file}. Press Enter to keep the current value.")
    else:
        print("API token, domain and subdomain are required. Zone and record IDs are discovered when left blank.")

    answers: dict[str, str] = {}
    for key, label, default in QUESTIONS:
        current = existing.get(key) or default
        value = _ask(prompt, label, current) or current
        if key == "TTL" and value and (not value.isdigit() or int(value) < 60):
            print("TTL must be a whole number of at least 60 seconds.", file=sys.stderr)
            return 1
        if value:
            answers[key] = value

    if not answers.get("API_TOKEN"):
        print("An API token is required.", file=sys.stderr)
        return 1

    if not existing:
        answers = {**answers, **NEW_FILE_DEFAULTS}

    try:
        env_file.parent.mkdir(parents=True, exist_ok=True)
        env_file.touch(exist_ok=True)
        for key, value in answers.items():
            set_key(str(env_file), key, value, quote_mode="never")
    except OSError as exc:
        print(f"Error writing configuration to {env_file}: {exc}", file=sys.stderr)
        return 1

    if os.name != "nt":
        try:
            env_file.chmod(0o600)
        except OSError as exc:
            print(f"Warning: could not restrict permissions on {env_file}: {exc}", file=sys.stderr)

    print(f"\nConfiguration saved to {env_file}")
    public_ip = (detector or IpDetector()).fallback_detect()
    if public_ip:
        print(f"Your current public IP appears to be {public_ip}.")
    print('Run "cloudflare-dyndns" to update once, or "cloudflare-dyndns --continuous" to keep it in sync.')
    if not answers.get("ZONE_ID") or not answers.get("RECORD_ID"):
        print("The first run may take longer while zones and records are discovered.")
    return 0
