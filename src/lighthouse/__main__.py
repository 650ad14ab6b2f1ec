"""Detect stale container images by comparing local digests with the registry's current manifest digest"""


def run() -> None:
    from .app import run as app_run

    app_run()


if __name__ == "__main__":
    run()
