"""`python -m stackweave` / `stackweave` console script."""


def main() -> None:
    # Tool registration happens at import time, so tools must load before the server starts
    from . import tools  # noqa: F401
    from .server import main as run_server

    run_server()


if __name__ == "__main__":
    main()
