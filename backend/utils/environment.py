"""
Environment Configuration Utility

Provides environment detection and the sandbox-tools policy.

ENVIRONMENT values:
- production: Simulated results and sandbox helpers are refused
- development: Sandbox helpers allowed
- test: Sandbox helpers allowed for automated testing
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"


def is_development() -> bool:
    """Check if running in development environment."""
    return ENVIRONMENT == "development"


def is_test() -> bool:
    """Check if running in test environment."""
    return ENVIRONMENT == "test"


def allow_sandbox_tools() -> bool:
    """
    Check if sandbox helpers (simulated match results) may run.

    Returns True only in development or test environments.
    Production results must come from a real outcome.
    """
    return ENVIRONMENT in {"development", "test"}


def get_environment_info() -> dict:
    """Get current environment information for the health endpoint."""
    return {
        "environment": ENVIRONMENT,
        "is_production": is_production(),
        "sandbox_tools_allowed": allow_sandbox_tools(),
        "momo_env": os.environ.get("MOMO_ENV", "sandbox")
    }


# Log environment on module load
logging.info(f"Environment: {ENVIRONMENT} | Sandbox tools allowed: {allow_sandbox_tools()}")
