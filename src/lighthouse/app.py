import asyncio
import logging
import sys
import uuid
from datetime import UTC, datetime
from pathlib import Path
from threading import Event

import httpx
import structlog

import lighthouse
from lighthouse.model import ImageUpdate

from .config import Config, load_app_config
from .helpers import APIStatsCounter, build_http_client
from .integrations.docker import DockerScanner, ImageCheck
from .integrations.registry import RegistryClient
from .notify import DiscordNotifier, LogNotifier, MqttNotifier, Notifier

log = structlog.get_logger()

CONF_FILE = Path("conf/config.yaml")


class App:
    def __init__(self) -> None:
        self.startup_timestamp: str = datetime.now(UTC).isoformat()
        self.last_scan_timestamp: str | None = None
        app_config: Config | None = load_app_config(CONF_FILE)
        if app_config is None:
            log.error(f"Invalid configuration at {CONF_FILE}, edit config to fix missing or invalid values and restart")
            log.error("Exiting app")
            sys.exit(1)
        self.cfg: Config = app_config

        structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, str(self.cfg.log.level))))
        log.debug("Logging initialized", level=self.cfg.log.level)

        self.http_client: httpx.Client = build_http_client(self.cfg.registry)
        self.registry = RegistryClient(
            self.http_client,
            user_agent=self.cfg.registry.user_agent,
            api_stats_counter=APIStatsCounter(self.cfg.registry.stats_report_interval),
        )
        self.scanners: list[DockerScanner] = []
        if self.cfg.docker.enabled:
            self.scanners.append(DockerScanner(self.cfg.docker, self.registry))

        self.notifiers: list[Notifier] = [LogNotifier()]
        if self.cfg.discord.enabled:
            self.notifiers.append(DiscordNotifier(self.cfg.discord, self.http_client))
        if self.cfg.mqtt.enabled:
            self.notifiers.append(MqttNotifier(self.cfg.mqtt, self.cfg.node))

        self.scan_count: int = 0
        self.stopped = Event()
        log.info(
            "App configured",
            node=self.cfg.node.name,
            scan_interval=self.cfg.scan_interval,
            notifiers=[n.name for n in self.notifiers],
        )

    async def scan(self) -> list[ImageUpdate]:
        session = uuid.uuid4().hex
        updates: list[ImageUpdate] = []
        # every lookup holds a pooled connection, so keep the fan-out within the pool
        limit = asyncio.Semaphore(self.cfg.registry.max_connections)

        async def check(scanner: DockerScanner, image_check: ImageCheck) -> None:
            async with limit:
                update: ImageUpdate | None = await asyncio.to_thread(scanner.check, image_check)
            if update is not None:
                updates.append(update)

        for scanner in self.scanners:
            slog = log.bind(session=session)
            if self.stopped.is_set():
                break
            slog.info("Scanning ...")
            checks: list[ImageCheck] = await asyncio.to_thread(scanner.collect)
            async with asyncio.TaskGroup() as tg:
                for image_check in checks:
                    tg.create_task(check(scanner, image_check), name=f"check-{image_check.image_ref}:{image_check.tag}")
            self.scan_count += 1
            slog.info(f"Scan #{self.scan_count} complete", updates=len(updates))

        for notifier in self.notifiers:
            notifier.notify(updates)
        self.last_scan_timestamp = datetime.now(UTC).isoformat()
        return updates

    async def main_loop(self) -> None:
        log.debug("Starting run loop")
        for notifier in self.notifiers:
            notifier.start()

        while not self.stopped.is_set():
            try:
                await self.scan()
            except Exception:
                log.exception("Scan failed")
            if not self.stopped.is_set():
                await asyncio.sleep(self.cfg.scan_interval)
            else:
                log.info("Stop requested, exiting run loop and skipping sleep")

        log.debug("Exiting run loop")

    def shutdown(self, *args, exit_code: int = 143) -> None:  # noqa: ANN002, ARG002
        log.info("Shutting down, exit_code: %s", exit_code)
        self.stopped.set()
        for notifier in self.notifiers:
            notifier.stop()
        self.http_client.close()
        log.info("Shutdown handling complete")
        sys.exit(exit_code)  # SIGTERM Graceful Exit = 143


def run() -> None:
    import signal

    from .app import App

    log.debug(f"Starting lighthouse v{lighthouse.version}")  # pyright: ignore[reportAttributeAccessIssue]
    app = App()

    signal.signal(signal.SIGTERM, app.shutdown)
    try:
        asyncio.run(app.main_loop(), debug=False)
        log.debug("App exited gracefully")
    except asyncio.CancelledError:
        log.debug("App exited on cancelled task")


if __name__ == "__main__":
    run()
