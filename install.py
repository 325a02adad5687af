#!/usr/bin/env python3
"""Cross-platform install script for multichat.

Usage:
    python install.py          # Production install
    python install.py --dev    # Development install (includes pytest)
"""

import os
import platform
import re
import secrets
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)
KEY_VAR = "API_KEY_ENCRYPTION_KEY"


def _ensure_encryption_key(env_path: str) -> None:
    """Fill an empty API_KEY_ENCRYPTION_KEY in .env with a fresh 32-byte hex key."""
    with open(env_path, encoding="utf-8") as f:
        text = f.read()
    match = re.search(rf"^{KEY_VAR}=(.*)$", text, flags=re.MULTILINE)
    if match and match.group(1).strip():
        print(f"{KEY_VAR} already set, leaving it unchanged.")
        return
    line = f"{KEY_VAR}={secrets.token_hex(32)}"
    if match:
        text = text[: match.start()] + line + text[match.end():]
    else:
        text = text.rstrip("\n") + "\n" + line + "\n"
    with open(env_path, "w", encoding="utf-8") as f:
        f.write(text)
    print(f"Generated {KEY_VAR} in {os.path.basename(env_path)}")


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required. "
            f"You have {sys.version_info.major}.{sys.version_info.minor}."
        )

    print(f"Python {sys.version_info.major}.{sys.version_info.minor} detected. OK.")

    dev = "--dev" in sys.argv
    project_dir = os.path.dirname(os.path.abspath(__file__))
    venv_dir = os.path.join(project_dir, ".venv")
    is_windows = platform.system() == "Windows"

    bin_dir = "Scripts" if is_windows else "bin"
    pip = os.path.join(venv_dir, bin_dir, "pip")
    python_exe = os.path.join(venv_dir, bin_dir, "python")

    if not os.path.isdir(venv_dir):
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])
    else:
        print("Virtual environment already exists.")

    print("Upgrading pip...")
    subprocess.check_call([pip, "install", "--upgrade", "pip"])

    target = ".[dev]" if dev else "."
    print(f"Installing multichat ({'development' if dev else 'production'})...")
    subprocess.check_call([pip, "install", "-e", target], cwd=project_dir)

    os.makedirs(os.path.join(project_dir, "data"), exist_ok=True)

    for src, dst in [("config.example.yaml", "config.yaml"), (".env.example", ".env")]:
        src_path = os.path.join(project_dir, src)
        dst_path = os.path.join(project_dir, dst)
        if not os.path.exists(dst_path) and os.path.exists(src_path):
            shutil.copy(src_path, dst_path)
            print(f"Created {dst} from {src}")
        elif os.path.exists(dst_path):
            print(f"{dst} already exists, skipping.")

    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        _ensure_encryption_key(env_path)

    print("Creating database schema...")
    subprocess.check_call([python_exe, "-m", "multichat", "init-db"], cwd=project_dir)

    activate_cmd = r".\.venv\Scripts\activate" if is_windows else "source .venv/bin/activate"

    print()
    print("=" * 50)
    print("  multichat installation complete!")
    print("=" * 50)
    print()
    print("Next steps:")
    print("  1. Edit .env - platform provider keys and Stripe secrets (optional)")
    print("  2. Edit config.yaml - price ids, free allowance, timeouts")
    print("  3. Activate the virtual environment:")
    print(f"       {activate_cmd}")
    print("  4. Store a key and pick models:")
    print("       python -m multichat set-key alice openai sk-...")
    print("       python -m multichat set-models alice --slot 1=openai:gpt-4o-mini")
    print("  5. Ask:")
    print('       python -m multichat ask alice "Hello"')
    print()


if __name__ == "__main__":
    main()
