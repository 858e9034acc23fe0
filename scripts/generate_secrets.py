#!/usr/bin/env python3
"""
Generate production secrets for the VM orchestrator.

Usage:
    python scripts/generate_secrets.py
    python scripts/generate_secrets.py --output .env.production
"""
import re
import secrets
import sys


def generate_secrets() -> dict[str, str]:
    """Generate the shared secrets the orchestrator checks at startup."""
    return {
        "ADMIN_API_TOKEN": secrets.token_urlsafe(48),
        "CRON_SECRET": secrets.token_urlsafe(32),
        "ORCHESTRATOR_SERVICE_TOKEN": secrets.token_urlsafe(32),
        "POSTGRES_PASSWORD": secrets.token_urlsafe(32),
    }


def patch_env(content: str, generated: dict[str, str]) -> tuple[str, int]:
    """Fill empty `KEY=` lines; keys that already have a value are left alone."""
    replacements = 0
    for key, value in generated.items():
        pattern = rf"^({key}=)\s*(#.*)?$"
        new_content = re.sub(pattern, rf"\g<1>{value}", content, flags=re.MULTILINE)
        if new_content != content:
            replacements += 1
            content = new_content
    return content, replacements


def main():
    generated = generate_secrets()

    if len(sys.argv) >= 3 and sys.argv[1] == "--output":
        target = sys.argv[2]
        try:
            with open(target, "r", encoding="utf-8") as f:
                content = f.read()
        except FileNotFoundError:
            print(f"File not found: {target}")
            sys.exit(1)

        content, replacements = patch_env(content, generated)
        with open(target, "w", encoding="utf-8") as f:
            f.write(content)

        print(f"Patched {replacements} secrets into {target}")
        print("\nRemember to also set:")
        print("   - CLOUDFLARE_API_TOKEN")
        print("   - HETZNER_API_KEY")
        print("   - PUBLIC_BASE_URL")
        return

    for key, value in generated.items():
        print(f"{key}={value}")


if __name__ == "__main__":
    main()
