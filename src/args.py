"""Argument parsing functionality for Chef Bodega."""

import argparse
from constants import Constants, VERSION


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog="chef-bodega",
        description=(
            "Chef Bodega - caching Berkshelf universe proxy for a Chef server"
        ),
        add_help=True,
    )

    parser.add_argument("--version",
                        action="version",
                        version=f"%(prog)s {VERSION}")
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="YAML config file; command line flags override its values",
                        action="store",
                        type=str)

    chef_group = parser.add_argument_group("Chef server")
    chef_group.add_argument("--chef-server",
                            dest="CHEF_SERVER",
                            help="Chef server URL (with org, if applicable)",
                            action="store",
                            type=str)
    chef_group.add_argument("--chef-pem",
                            dest="CHEF_PEM",
                            help="Path to Chef client PEM file",
                            action="store",
                            type=str)
    chef_group.add_argument("--chef-client",
                            dest="CHEF_CLIENT",
                            help="Client to use when connecting to Chef Server",
                            action="store",
                            type=str)
    chef_group.add_argument("--chef-interval",
                            dest="POLL_INTERVAL",
                            help=f"Seconds between cookbook polls (default: {Constants.DEFAULT_POLL_INTERVAL})",
                            action="store",
                            type=float)
    chef_group.add_argument("--skip-ssl",
                            dest="SKIP_SSL",
                            help="Turn off Chef Server SSL verification",
                            action="store_true")
    chef_group.add_argument("--timeout",
                            dest="TIMEOUT",
                            help=f"Chef API request timeout in seconds (default: {Constants.REQUEST_TIMEOUT})",
                            action="store",
                            type=int)
    chef_group.add_argument("--fetch-timeout",
                            dest="FETCH_TIMEOUT",
                            help="Deadline in seconds for each cookbook file download (default: none)",
                            action="store",
                            type=float)

    listen_group = parser.add_argument_group("Listener")
    listen_group.add_argument("--host",
                              dest="HOST",
                              help=f"Listening address (default: {Constants.DEFAULT_HOST})",
                              action="store",
                              type=str)
    listen_group.add_argument("--port",
                              dest="PORT",
                              help=f"Listening port (default: {Constants.DEFAULT_PORT})",
                              action="store",
                              type=int)
    listen_group.add_argument("--base-url",
                              dest="BASE_URL",
                              help=f"Base URL for universe (default: {Constants.DEFAULT_BASE_URL})",
                              action="store",
                              type=str)
    listen_group.add_argument("--allow-external",
                              dest="ALLOW_EXTERNAL",
                              help="Allow binding to non-loopback addresses",
                              action="store_true")

    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)

    return parser.parse_args(argv)
