#!/usr/bin/env python3
"""
Config validator for hass-link.

Checks configuration files before a client starts. With ``--probe`` it also
opens a real connection, authenticates, and asks Home Assistant for its
version.
"""

import asyncio
import logging
import sys
from pathlib import Path


def validate(env_path: str = ".env", config_path: str = "config.yaml") -> bool:
    """Validate configuration and dependencies."""
    print("🔍 hass-link Configuration Validator\n")

    errors = []
    warnings = []

    # Check .env
    env_file = Path(env_path)
    if not env_file.exists():
        errors.append(f"❌ {env_file} not found")
    else:
        print(f"✓ {env_file} exists")
        try:
            from dotenv import dotenv_values

            values = dotenv_values(env_file)

            if not values.get("HASS_URL"):
                errors.append(f"❌ HASS_URL not set in {env_file}")
            else:
                print(f"✓ HASS_URL: {values['HASS_URL']}")
                if values["HASS_URL"].startswith(("http://", "ws://")):
                    warnings.append("⚠️  HASS_URL is unencrypted; the token is sent in clear text")

            if not values.get("HASS_TOKEN"):
                errors.append(f"❌ HASS_TOKEN not set in {env_file}")
            else:
                print(f"✓ HASS_TOKEN: {'*' * 20}... (hidden)")

        except Exception as e:
            errors.append(f"❌ Error loading {env_file}: {e}")

    # Check config.yaml files
    for label, path in (
        ("config.yaml", Path(config_path)),
        ("User config", Path.home() / ".config" / "hass_link" / "config.yaml"),
    ):
        if not path.exists():
            print(f"ℹ️  No {label} (will use defaults): {path}")
            continue
        try:
            import yaml
            from hass_link.config import ClientOptions

            with open(path) as f:
                data = yaml.safe_load(f) or {}
            ClientOptions(**(data.get("client") or {}))
            print(f"✓ {label} is valid: {path}")
        except Exception as e:
            errors.append(f"❌ Error in {label} ({path}): {e}")

    # Check dependencies
    print("\n📦 Checking dependencies...")
    for dep in ["websockets", "pydantic", "yaml", "dotenv", "hass_link"]:
        try:
            __import__(dep)
            print(f"✓ {dep}")
        except ImportError:
            errors.append(f"❌ Missing dependency: {dep}")

    # Summary
    print("\n" + "=" * 60)
    if errors:
        print(f"❌ VALIDATION FAILED - {len(errors)} error(s)")
        for err in errors:
            print(f"  {err}")
    else:
        print("✅ VALIDATION PASSED")

    if warnings:
        print(f"\n⚠️  {len(warnings)} warning(s):")
        for warn in warnings:
            print(f"  {warn}")

    print("=" * 60)

    return len(errors) == 0


async def probe(env_path: str = ".env", config_path: str = "config.yaml", log_level: int = logging.WARNING) -> bool:
    """Connect, authenticate and fetch the Home Assistant version."""
    from hass_link import HassLinkError, HomeAssistantAPI, HomeAssistantConnection, load_config
    from hass_link.logging_setup import configure_logging

    configure_logging(log_level)

    settings = load_config(env_path, project_config_path=Path(config_path))
    config = settings.connection_config(
        on_status=lambda status, reason: print(f"  status: {status.value} {reason or ''}"),
    )

    print(f"\n🔌 Probing {config.url} ...")
    try:
        async with HomeAssistantConnection(config) as conn:
            info = await HomeAssistantAPI(conn).get_config()
    except (HassLinkError, asyncio.TimeoutError) as e:
        print(f"❌ Probe failed: {e!r}")
        return False

    print(f"✅ Connected to Home Assistant {info.get('version', '?')}")
    return True


if __name__ == "__main__":
    success = validate()
    if success and "--probe" in sys.argv[1:]:
        level = logging.DEBUG if "--debug" in sys.argv[1:] else logging.WARNING
        success = asyncio.run(probe(log_level=level))
    sys.exit(0 if success else 1)
