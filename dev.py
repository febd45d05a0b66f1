#!/usr/bin/env python3

"""
Development utility for the OAuth gateway
"""

import argparse
import os
import secrets
import subprocess
import sys
from pathlib import Path

def run_command(cmd, check=True):
    """Run a command and echo it first"""
    print(f"🔧 Running: {' '.join(cmd)}")
    return subprocess.run(cmd, check=check)

def run_server():
    """Run development server with the in-memory store unless overridden"""
    env = os.environ.copy()
    env.setdefault("ENVIRONMENT", "development")
    env.setdefault("STORE_BACKEND", "memory")
    env.setdefault("BASE_URL", "http://localhost:8000")
    print("🚀 Starting development server on http://localhost:8000")
    subprocess.run(
        [sys.executable, "-m", "uvicorn", "main:create_app", "--factory", "--reload", "--port", "8000"],
        env=env,
        check=False
    )

def run_tests():
    """Run the pytest suite"""
    result = run_command([sys.executable, "-m", "pytest", "tests", "-q"], check=False)
    return result.returncode == 0

def run_smoke(url):
    """Run live smoke tests against a running server"""
    result = run_command([sys.executable, "smoke_test.py", "--url", url], check=False)
    return result.returncode == 0

def generate_secret_key():
    """Generate a random client secret for a confidential client"""
    print(f"🔑 Client secret: {secrets.token_urlsafe(32)}")

def check_env():
    """Check environment configuration"""
    print("🔍 Checking environment configuration...")
    backend = os.getenv("STORE_BACKEND", "memory" if os.getenv("ENVIRONMENT") == "development" else "supabase")

    missing = []
    if backend == "supabase":
        missing = [name for name in ("SUPABASE_URL", "SUPABASE_SERVICE_KEY") if not os.getenv(name)]
    if not os.getenv("SUPABASE_URL"):
        print("⚠️  SUPABASE_URL not set - users cannot be sent to the Identity Provider")

    if missing:
        print(f"❌ Missing required variables: {', '.join(missing)}")
        return False

    print("✅ Environment configuration looks good!")
    print("\n📋 Current configuration:")
    print(f"   Environment: {os.getenv('ENVIRONMENT', 'production')}")
    print(f"   Base URL: {os.getenv('BASE_URL', 'http://localhost:8000')}")
    print(f"   Store backend: {backend}")
    print(f"   Default provider: {os.getenv('DEFAULT_PROVIDER', 'google')}")
    return True

def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Development utility for the OAuth gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Available commands:
  run         Run development server
  test        Run the pytest suite
  smoke       Run live smoke tests against --url
  secret      Generate a client secret
  check       Check environment configuration
        """
    )
    parser.add_argument("command", choices=["run", "test", "smoke", "secret", "check"], help="Command to execute")
    parser.add_argument("--url", default="http://localhost:8000", help="Server URL for smoke tests")
    args = parser.parse_args()

    os.chdir(Path(__file__).parent)

    if args.command == "run":
        run_server()
    elif args.command == "test":
        sys.exit(0 if run_tests() else 1)
    elif args.command == "smoke":
        sys.exit(0 if run_smoke(args.url) else 1)
    elif args.command == "secret":
        generate_secret_key()
    elif args.command == "check":
        sys.exit(0 if check_env() else 1)

if __name__ == "__main__":
    main()
