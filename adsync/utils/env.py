def load_env_file() -> bool:
    """Load a local .env file without overriding the process environment.

    WHAT:
        Reads `.env` from the working directory into os.environ.
    WHY:
        Developers run the worker and API from a checkout with a local .env,
        while deployed processes get real environment variables that must win.

    Returns:
        True if a .env file was found and read.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    loaded = load_dotenv(override=False)
    if loaded:
        logger.info("[ENV] Loaded local .env file (existing variables kept)")
    else:
        logger.debug("[ENV] No local .env file found")
    return loaded
