"""Chef Bodega - caching Berkshelf universe proxy in front of a Chef server."""
from args import parse_args
from cli_proxy import run_proxy_server


def main(argv=None):
    """Main function of the program."""
    args = parse_args(argv)
    run_proxy_server(args)


if __name__ == "__main__":
    main()
