"""
Configuration validation script.

Validates the relay environment, the optional relay.json overlay and the
word filter lists without starting the runtime.

Design rules:
- No side effects on import
- No runtime startup
- Validation only (no mutation)
"""

from __future__ import annotations

import sys
from pathlib import Path

from dotenv import load_dotenv

# ------------------------------------------------------------
# Paths
# ------------------------------------------------------------

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shared.config.errors import ConfigError  # noqa: E402
from shared.config.relay import load_relay_config  # noqa: E402
from shared.config.word_filter import load_word_filter_lists  # noqa: E402


def _error(msg: str):
    print(f"[CONFIG ERROR] {msg}", file=sys.stderr)


# ------------------------------------------------------------
# Validators
# ------------------------------------------------------------

def validate_relay_config() -> bool:
    try:
        config = load_relay_config()
    except ConfigError as e:
        _error(str(e))
        return False

    try:
        load_word_filter_lists(
            Path(config.word_filter_path) if config.word_filter_path else None
        )
    except ConfigError as e:
        _error(str(e))
        return False

    return True


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def main() -> int:
    load_dotenv()

    if not validate_relay_config():
        print("Configuration validation failed.", file=sys.stderr)
        return 1

    print("Configuration validation passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
