def require_env(name: str) -> str:
    """Return the value of a mandatory environment variable or raise RuntimeError.
    WHY: Fail-fast during worker startup when critical configuration is missing.
    """
    import os
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_env_file() -> None:
    """Load environment variables from .env file if not already set.

    WHAT:
        Loads variables from a local .env file into os.environ.
        Does NOT overwrite existing environment variables.
    WHY:
        Developers keep DATABASE_URL / TOKEN_ENCRYPTION_KEY in backend/.env
        without risking overwriting production variables.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    # Returns True if the file exists, even when no vars were set.
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
