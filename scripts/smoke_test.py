#!/usr/bin/env python3
"""
Smoke Test Script

Validates configuration and connectivity without making a real call.

Checks:
1. Environment variables are set (without printing secrets)
2. The IVR flow loads and its chain reaches `complete`
3. The Deepgram API key is accepted
"""

import asyncio
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def print_header(text: str) -> None:
    """Print a section header."""
    print(f"\n{'=' * 50}")
    print(f" {text}")
    print('=' * 50)


def print_ok(text: str) -> None:
    print(f"  [OK] {text}")


def print_error(text: str) -> None:
    print(f"  [ERR] {text}")


def print_warn(text: str) -> None:
    print(f"  [WARN] {text}")


def check_env_vars() -> bool:
    """Check that required environment variables are set."""
    print_header("Checking Environment Variables")

    from dotenv import load_dotenv
    load_dotenv()

    required_vars = [
        "PUBLIC_HOST",
        "TWILIO_ACCOUNT_SID",
        "TWILIO_AUTH_TOKEN",
        "IVR_NUMBER",
        "DEEPGRAM_API_KEY",
    ]

    optional_vars = [
        "PORT",
        "LOG_LEVEL",
        "CALLER_ID",
        "STREAM_TRACK",
        "DEEPGRAM_MODEL",
        "DEEPGRAM_LANGUAGE",
        "IVR_FLOW_PATH",
        "DTMF_PAUSE_SECONDS",
    ]

    all_ok = True

    for var in required_vars:
        value = os.getenv(var)
        if value:
            if var in ["PUBLIC_HOST", "IVR_NUMBER"]:
                print_ok(f"{var}: {value}")
            else:
                masked = value[:4] + "..." + value[-4:] if len(value) > 8 else "****"
                print_ok(f"{var}: {masked}")
        else:
            print_error(f"{var}: NOT SET")
            all_ok = False

    print("\nOptional variables:")
    for var in optional_vars:
        value = os.getenv(var)
        if value:
            print_ok(f"{var}: {value}")
        else:
            print_warn(f"{var}: not set (using default)")

    return all_ok


def check_flow() -> bool:
    """Load and validate the configured IVR flow."""
    print_header("Validating IVR Flow")

    from src.ivrbot.flow import FlowError, load_flow

    try:
        flow = load_flow(os.getenv("IVR_FLOW_PATH", "").strip())
    except FlowError as e:
        print_error(str(e))
        return False

    for step in flow.walk():
        print_ok(f"{step.id}: {type(step.action).__name__} on {list(step.trigger_phrases)} -> {step.next}")
    return True


async def check_deepgram_key() -> bool:
    """Validate the Deepgram API key."""
    print_header("Validating Deepgram Key")

    import httpx

    api_key = os.getenv("DEEPGRAM_API_KEY")
    if not api_key:
        print_error("DEEPGRAM_API_KEY not set")
        return False

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                "https://api.deepgram.com/v1/projects",
                headers={"Authorization": f"Token {api_key}"},
                timeout=10.0,
            )
    except httpx.RequestError as e:
        print_error(f"Failed to connect to Deepgram API: {e}")
        return False

    if response.status_code != 200:
        print_error(f"API returned status {response.status_code}")
        return False

    print_ok("Deepgram key accepted")
    return True


async def main() -> int:
    """Run all smoke tests."""
    print("\n" + "=" * 50)
    print(" IVR NAVIGATOR - SMOKE TEST")
    print("=" * 50)

    results = []
    results.append(("Environment Variables", check_env_vars()))
    results.append(("IVR Flow", check_flow()))
    results.append(("Deepgram Key", await check_deepgram_key()))

    print_header("Summary")

    all_passed = True
    for name, passed in results:
        if passed:
            print_ok(name)
        else:
            print_error(name)
            all_passed = False

    print()

    if all_passed:
        print("[OK] All checks passed!")
        print("\nNext steps:")
        print("  1. Run 'python -m server.app' to start the server")
        print("  2. Run 'ngrok http 7860' in another terminal")
        print("  3. Update PUBLIC_HOST in .env with your ngrok URL")
        print("  4. Point your Twilio number's voice webhook at https://<PUBLIC_HOST>/twiml")
        return 0

    print("[ERR] Some checks failed. Please fix the issues above.")
    return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
