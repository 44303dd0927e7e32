#!/usr/bin/env python3
"""
QueryGuard Environment Guard - Fail-Fast Startup Validation

Called from the API lifespan before the gateway is built, so a broken
deployment refuses to start instead of serving an unguarded database.

GUARANTEES:
1. All critical dependencies are importable
2. The allowlist policy document exists and parses
3. Missing optional settings (DATABASE_URL, ...) are reported

USAGE:
    from env_guard import validate_environment
    validate_environment()  # Raises EnvironmentError if invalid
"""

import os
import sys
from typing import List, Tuple

from dotenv import load_dotenv

# ============================================================================
# CONFIGURATION
# ============================================================================
REQUIRED_PACKAGES = [
    # (module_name, package_name)
    ("sqlglot", "sqlglot"),
    ("sqlalchemy", "sqlalchemy"),
    ("pandas", "pandas"),
    ("fastapi", "fastapi"),
    ("pydantic", "pydantic"),
    ("uvicorn", "uvicorn"),
    ("dotenv", "python-dotenv"),
    ("llama_index.core", "llama-index-core"),
]

REQUIRED_ENV_VARS = []

OPTIONAL_ENV_VARS = [
    "ALLOWLIST_PATH",
    "DATABASE_URL",
    "ARTIFACT_DIR",
    "AUDIT_LOG_PATH",
]


# ============================================================================
# VALIDATION FUNCTIONS
# ============================================================================

def validate_packages() -> Tuple[List[str], List[str]]:
    """
    Validate all required packages are importable.

    Returns:
        (errors, package_info)
    """
    errors = []
    info = []

    for module_name, package_name in REQUIRED_PACKAGES:
        try:
            module = __import__(module_name, fromlist=[''])
            version = getattr(module, "__version__", None)
            info.append(f"  {package_name}: {version or 'imported'}")
        except ImportError as e:
            errors.append(
                f"MISSING PACKAGE: {package_name}\n"
                f"  Import error: {e}\n"
                f"  Solution: pip install {package_name}"
            )

    return errors, info


def validate_env_vars() -> Tuple[List[str], List[str]]:
    """
    Validate required environment variables are set.

    Returns:
        (errors, warnings)
    """
    errors = []
    warnings = []

    load_dotenv()

    for var_name in REQUIRED_ENV_VARS:
        if not os.getenv(var_name):
            errors.append(
                f"MISSING ENVIRONMENT VARIABLE: {var_name}\n"
                f"  Solution: Add {var_name}=your_value to .env file"
            )

    for var_name in OPTIONAL_ENV_VARS:
        if not os.getenv(var_name):
            warnings.append(f"{var_name} not set (using default)")

    return errors, warnings


def validate_allowlist() -> List[str]:
    """
    Validate the policy document loads.

    Returns:
        List of errors (empty if valid)
    """
    from config import GatewaySettings
    from schema_allowlist import AllowlistConfigError, load_allowlist

    path = GatewaySettings.from_env().allowlist_path
    try:
        load_allowlist(path)
    except AllowlistConfigError as e:
        return [f"INVALID ALLOWLIST POLICY\n  {e}"]
    return []


def validate_environment(strict: bool = True) -> bool:
    """
    Run all environment validations.

    Args:
        strict: If True, raise EnvironmentError on any failure.
                If False, print warnings and return success status.

    Returns:
        True if environment is valid, False otherwise.

    Raises:
        EnvironmentError: If strict=True and validation fails.
    """
    print("=" * 70)
    print("QUERYGUARD ENVIRONMENT GUARD - Startup Validation")
    print("=" * 70)

    all_errors = []

    print("\n[1/3] Checking required packages...")
    package_errors, package_info = validate_packages()
    all_errors.extend(package_errors)
    for info in package_info:
        print(info)

    print("\n[2/3] Checking environment variables...")
    env_errors, env_warnings = validate_env_vars()
    all_errors.extend(env_errors)
    for warning in env_warnings:
        print(f"  WARNING: {warning}")

    print("\n[3/3] Checking allowlist policy document...")
    if not package_errors:
        policy_errors = validate_allowlist()
        all_errors.extend(policy_errors)
        if not policy_errors:
            print("  Policy document: OK")

    print("\n" + "=" * 70)

    if all_errors:
        print("ENVIRONMENT VALIDATION FAILED!")
        print("=" * 70)
        for i, error in enumerate(all_errors, 1):
            print(f"\nError {i}:")
            print(error)

        if strict:
            raise EnvironmentError(
                f"Environment validation failed with {len(all_errors)} error(s). "
                f"See above for details."
            )
        return False

    print("ENVIRONMENT VALIDATION PASSED!")
    print("=" * 70)
    return True


# ============================================================================
# MAIN (for standalone testing)
# ============================================================================
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="QueryGuard Environment Guard")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with error code on failure"
    )
    args = parser.parse_args()

    try:
        success = validate_environment(strict=args.strict)
        sys.exit(0 if success else 1)
    except EnvironmentError as e:
        print(f"\n\nFATAL: {e}")
        sys.exit(1)
