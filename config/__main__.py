"""Command line interface for checking configuration loading"""
import sys
from pathlib import Path

from . import DEFAULTS, SettingsError, get_settings

SECRET_KEYS = ('stripe_api_key', 'stripe_webhook_secret')

def main():
    """Display loaded configuration and write settings.conf.example"""
    try:
        settings = get_settings()
    except SettingsError as e:
        print(e, file=sys.stderr)
        sys.exit(1)

    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in sorted(settings.items()):
        if key in SECRET_KEYS and value:
            value = '********'
        print(f"{key}: {value}")

    with open(Path("settings.conf.example"), "w") as f:
        f.write("[DEFAULT]\n")
        for key, value in DEFAULTS.items():
            f.write(f"{key} = {value}\n")

if __name__ == "__main__":
    main()
