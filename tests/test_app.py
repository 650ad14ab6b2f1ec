# python
import asyncio
import signal
import types
from collections.abc import Coroutine
from typing import Any, NoReturn
from unittest.mock import Mock

import pytest

from conftest import REMOTE_DIGEST
from lighthouse.app import App, run  # relative import as required
from lighthouse.integrations.docker import ImageCheck
from lighthouse.model import ImageUpdate, UpdateKind
from lighthouse.notify import LogNotifier, Notifier


def checks() -> list[ImageCheck]:
    return [
        ImageCheck("ghcr.io/org/app", "ghcr.io/org/app", "latest", "sha256:1", ["sha256:old"], ["app"]),
        ImageCheck("ghcr.io/org/db", "ghcr.io/org/db", "16", "sha256:2", [REMOTE_DIGEST], ["db"]),
    ]


def fake_check(image_check: ImageCheck) -> ImageUpdate | None:
    if REMOTE_DIGEST in image_check.local_digests:
        return None
    return ImageUpdate(
        image_check.image_ref, image_check.tag, UpdateKind.REFERENCE_IMAGE_IS_OUTDATED, REMOTE_DIGEST, image_check.local_digests
    )


async def test_scan(app_with_mocked_external_dependencies: App) -> None:
    uut: App = app_with_mocked_external_dependencies
    scanner = uut.scanners[0]
    scanner.collect.return_value = checks()  # type: ignore[attr-defined]
    scanner.check.side_effect = fake_check  # type: ignore[attr-defined]
    notifier = Mock(spec=Notifier)
    uut.notifiers.append(notifier)

    updates = await uut.scan()

    assert [u.title for u in updates] == ["ghcr.io/org/app:latest"]
    assert scanner.check.call_count == 2  # type: ignore[attr-defined]
    notifier.notify.assert_called_once_with(updates)
    assert uut.scan_count == 1
    assert uut.last_scan_timestamp is not None


async def test_scan_notifies_empty_results(app_with_mocked_external_dependencies: App) -> None:
    uut: App = app_with_mocked_external_dependencies
    uut.scanners[0].collect.return_value = []  # type: ignore[attr-defined]
    notifier = Mock(spec=Notifier)
    uut.notifiers.append(notifier)

    assert await uut.scan() == []
    notifier.notify.assert_called_once_with([])


def test_default_notifiers(app_with_mocked_external_dependencies: App) -> None:
    uut: App = app_with_mocked_external_dependencies
    assert [type(n) for n in uut.notifiers] == [LogNotifier]
    assert uut.registry.user_agent == "Lighthouse"


def stop_after_first_scan(uut: App, monkeypatch) -> None:  # noqa: ANN001
    original_scan = uut.scan

    async def scan_then_stop() -> list[ImageUpdate]:
        try:
            return await original_scan()
        finally:
            uut.stopped.set()

    monkeypatch.setattr(uut, "scan", scan_then_stop)


async def test_main_loop_stops(app_with_mocked_external_dependencies: App, monkeypatch) -> None:  # noqa: ANN001
    uut: App = app_with_mocked_external_dependencies
    uut.scanners[0].collect.return_value = []  # type: ignore[attr-defined]
    stop_after_first_scan(uut, monkeypatch)

    await uut.main_loop()
    assert uut.scan_count == 1


async def test_main_loop_survives_scan_failure(app_with_mocked_external_dependencies: App, monkeypatch) -> None:  # noqa: ANN001
    uut: App = app_with_mocked_external_dependencies
    uut.scanners[0].collect.side_effect = OSError("docker socket gone")  # type: ignore[attr-defined]
    stop_after_first_scan(uut, monkeypatch)

    await uut.main_loop()
    assert uut.scan_count == 0
    assert uut.stopped.is_set()


def test_shutdown(app_with_mocked_external_dependencies: App) -> None:
    uut: App = app_with_mocked_external_dependencies
    notifier = Mock(spec=Notifier)
    uut.notifiers.append(notifier)
    with pytest.raises(SystemExit) as exc_info:
        uut.shutdown()
    assert exc_info.value.code == 143
    notifier.stop.assert_called_once()
    assert uut.http_client.is_closed


class DummyApp:
    """Dummy App to replace lighthouse.app.App during tests.

    Records the created instance on DummyApp.instance for assertions.
    """

    instance = None

    def __init__(self) -> None:
        DummyApp.instance = self
        self.run_called = False
        self.shutdown_called = False

    async def main_loop(self) -> None:
        self.run_called = True

    def shutdown(self, *args: Any, **kwargs: Any) -> None:  # noqa: ARG002
        self.shutdown_called = True


def test_run_sets_signal_and_calls_asyncio_run(monkeypatch) -> None:  # noqa: ANN001
    calls: dict[str, Any] = {}

    def fake_signal(sig: int, handler: types.MethodType) -> None:
        calls["sig"] = sig
        calls["handler"] = handler

    monkeypatch.setattr(signal, "signal", fake_signal)

    import lighthouse.app as app_module

    monkeypatch.setattr(app_module, "App", DummyApp)

    def fake_asyncio_run(coro: Coroutine, debug: bool = False) -> None:
        calls["coro"] = coro
        calls["debug"] = debug
        coro.close()

    monkeypatch.setattr(asyncio, "run", fake_asyncio_run)

    run()

    assert calls.get("sig") == signal.SIGTERM
    assert DummyApp.instance is not None
    assert calls.get("handler") == DummyApp.instance.shutdown
    assert calls.get("debug") is False
    assert isinstance(calls.get("coro"), types.CoroutineType)


def test_run_handles_asyncio_cancellederror(monkeypatch) -> None:  # noqa: ANN001
    import lighthouse.app as app_module

    monkeypatch.setattr(app_module, "App", DummyApp)
    monkeypatch.setattr(signal, "signal", lambda *args, **kwargs: None)  # noqa: ARG005

    def raising_asyncio_run(coro: Coroutine, debug: bool = False) -> NoReturn:  # noqa: ARG001
        coro.close()
        raise asyncio.CancelledError()

    monkeypatch.setattr(asyncio, "run", raising_asyncio_run)

    run()

    assert DummyApp.instance is not None
