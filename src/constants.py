"""Constants used in the project."""

from enum import Enum

VERSION = "1.0.0"


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    CONFIG_ERROR = 3


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    LOG_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
    ENV_LOG_LEVEL = "BODEGA_LOG_LEVEL"

    DEFAULT_HOST = "127.0.0.1"
    DEFAULT_PORT = 8080
    DEFAULT_BASE_URL = "http://localhost:8080"
    DEFAULT_POLL_INTERVAL = 300  # seconds between catalog refreshes
    REQUEST_TIMEOUT = 30  # Timeout in seconds for Chef server API requests

    # Chef server API
    CHEF_VERSION = "12.0.0"
    CHEF_SERVER_API_VERSION = "0"
    CHEF_SIGN_VERSION = "1.3"
    CHEF_AUTH_HEADER_WIDTH = 60

    # Archive assembly
    FETCH_QUEUE_DEPTH = 100
    ARCHIVE_FILE_MODE = 0o644
    USER_AGENT = "chef-bodega/" + VERSION
