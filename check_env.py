#!/usr/bin/env python3
"""Helper script to check and create the .env file for the service."""

from pathlib import Path
import os
import sys

TEMPLATE = """# Storage backend: memory (single process) or supabase (shared)
CELLMATCH_STORAGE_BACKEND=memory

# Supabase Configuration (required when CELLMATCH_STORAGE_BACKEND=supabase)
# Get these from: https://supabase.com/dashboard → Your Project → Settings → API
CELLMATCH_SUPABASE_URL=https://your-project-id.supabase.co
CELLMATCH_SUPABASE_KEY=your-service-role-key-here

# API Configuration
CELLMATCH_API_PREFIX=/api
CELLMATCH_LOG_LEVEL=INFO
# CELLMATCH_FRONTEND_ALLOWED_ORIGINS - JSON array or comma-separated list

# Grid and timing (every client must use the same cell step)
CELLMATCH_CELL_STEP_SECONDS=30
# CELLMATCH_PRESENCE_STALE_SECONDS=60
# CELLMATCH_REQUEST_FRESH_SECONDS=180
# CELLMATCH_EXPANSION_WAIT_SECONDS=20
"""


def _masked(line: str) -> str:
    if "CELLMATCH_SUPABASE_KEY" in line and "=" in line:
        name, value = line.split("=", 1)
        value = value.strip()
        if len(value) > 20:
            return f"{name}={value[:20]}...{value[-10:]}"
    return line


def main():
    project_root = Path(__file__).parent
    env_file = project_root / ".env"

    print("=" * 60)
    print("Cell matching environment checker")
    print("=" * 60)
    print()

    if env_file.exists():
        print(f"✅ Found .env file at: {env_file}")
        print()
        print("Current contents:")
        print("-" * 60)
        for line in env_file.read_text(encoding="utf-8").split("\n"):
            print(_masked(line))
        print("-" * 60)
        print()
    else:
        print(f"❌ .env file NOT found at: {env_file}")
        print("Creating template .env file...")
        env_file.write_text(TEMPLATE, encoding="utf-8")
        print(f"✅ Created .env file at: {env_file}")
        print("⚠️  Please edit .env before starting the server!")
        return

    print("Testing config loading...")
    print()
    try:
        sys.path.insert(0, str(project_root / "src"))
        from cellmatch.config import Settings

        settings = Settings()
    except Exception as e:
        print(f"❌ Error loading config: {e}")
        print("Make sure you're running this from the project root directory")
        return

    print(f"✅ Storage backend: {settings.storage_backend}")
    print(f"✅ Cell step: {settings.cell_step_seconds} arc-seconds")
    for name in ("CELLMATCH_SUPABASE_URL", "CELLMATCH_SUPABASE_KEY"):
        print(f"{'✅' if os.getenv(name) else '❌'} {name} {'set' if os.getenv(name) else 'not set'} in environment")
    print()

    if settings.storage_backend == "supabase" and not (settings.supabase_url and settings.supabase_key):
        print("=" * 60)
        print("❌ ERROR: Supabase backend selected but NOT configured")
        print("=" * 60)
        print("The server will fall back to in-memory stores.")
    else:
        print("=" * 60)
        print("✅ SUCCESS: configuration is usable")
        print("=" * 60)


if __name__ == "__main__":
    main()
