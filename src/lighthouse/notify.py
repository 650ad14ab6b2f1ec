import json
import re
from abc import abstractmethod
from threading import Event
from typing import Any

import httpx
import paho.mqtt.client as mqtt
import structlog
from paho.mqtt.enums import CallbackAPIVersion, MQTTErrorCode, MQTTProtocolVersion
from paho.mqtt.properties import Properties
from paho.mqtt.reasoncodes import ReasonCode

import lighthouse
from lighthouse.config import DiscordConfig, MqttConfig, NodeConfig
from lighthouse.model import ImageUpdate

log = structlog.get_logger()

DISCORD_MAX_EMBEDS = 10
VERSION: str = lighthouse.version  # pyright: ignore[reportAttributeAccessIssue]


class Notifier:
    """Sink for the updates found by a scan"""

    def __init__(self, name: str) -> None:
        self.name: str = name
        self.log: Any = structlog.get_logger().bind(notifier=name)

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    @abstractmethod
    def notify(self, updates: list[ImageUpdate]) -> None:
        pass


class LogNotifier(Notifier):
    def __init__(self) -> None:
        super().__init__("log")

    def notify(self, updates: list[ImageUpdate]) -> None:
        for update in updates:
            self.log.info(
                "Update found for %s: %s",
                update.title,
                update.kind.description,
                remote_digest=update.remote_digest,
                containers=update.container_names,
            )


class DiscordNotifier(Notifier):
    def __init__(self, cfg: DiscordConfig, client: httpx.Client) -> None:
        super().__init__("discord")
        self.cfg: DiscordConfig = cfg
        self.client: httpx.Client = client

    def notify(self, updates: list[ImageUpdate]) -> None:
        if not updates:
            return
        self.log.info("Notifying in discord", updates=len(updates))
        try:
            response = self.client.post(self.cfg.webhook_url, json=self.build_payload(updates))
            if response.status_code not in (httpx.codes.OK, httpx.codes.NO_CONTENT):
                self.log.warning("Failed to notify (HTTP %s): %s", response.status_code, response.text)
        except httpx.HTTPError as e:
            self.log.warning("Failed to notify: %s", e)

    def build_payload(self, updates: list[ImageUpdate]) -> dict[str, Any]:
        return {
            "username": self.cfg.username,
            "embeds": [self.build_embed(update) for update in updates[:DISCORD_MAX_EMBEDS]],
        }

    def build_embed(self, update: ImageUpdate) -> dict[str, Any]:
        return {
            "title": update.title,
            "description": f"Update found. {update.kind.description}",
            "timestamp": update.as_dict()["checked_at"],
            "color": update.kind.color,
            "footer": {"text": f"lighthouse {VERSION}"},
            "fields": [
                {"name": "Container names", "value": ", ".join(update.container_names) or "-", "inline": True},
                {"name": "Local digests", "value": "\n".join(f"`{d}`" for d in update.local_digests) or "-"},
                {"name": "New digest", "value": f"`{update.remote_digest}`"},
            ],
        }


def topic_slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value).strip("_")


class MqttNotifier(Notifier):
    def __init__(self, cfg: MqttConfig, node_cfg: NodeConfig) -> None:
        super().__init__("mqtt")
        self.cfg: MqttConfig = cfg
        self.node_cfg: NodeConfig = node_cfg
        self.client: mqtt.Client | None = None
        self.fatal_failure = Event()
        self.log = self.log.bind(host=cfg.host)

    def start(self) -> None:
        logger = self.log.bind(action="start")
        try:
            protocol: MQTTProtocolVersion
            if self.cfg.protocol in ("3", "3.11"):
                protocol = MQTTProtocolVersion.MQTTv311
            elif self.cfg.protocol == "3.1":
                protocol = MQTTProtocolVersion.MQTTv31
            elif self.cfg.protocol in ("5", "5.0"):
                protocol = MQTTProtocolVersion.MQTTv5
            else:
                logger.info("No valid MQTT protocol version found (%s), setting to default v3.11", self.cfg.protocol)
                protocol = MQTTProtocolVersion.MQTTv311

            self.client = mqtt.Client(
                callback_api_version=CallbackAPIVersion.VERSION2,
                client_id=f"lighthouse_{self.node_cfg.name}",
                clean_session=True if protocol != MQTTProtocolVersion.MQTTv5 else None,
                protocol=protocol,
            )
            self.client.username_pw_set(self.cfg.user, password=self.cfg.password)
            self.client.on_connect = self.on_connect
            rc: MQTTErrorCode = self.client.connect(host=self.cfg.host, port=self.cfg.port, keepalive=60)
            logger.info("Client connection requested", result_code=rc)
            self.client.loop_start()
        except Exception as e:
            logger.error("Failed to connect to broker", port=self.cfg.port, error=str(e))
            raise OSError(f"Connection Failure to {self.cfg.host}:{self.cfg.port} as {self.cfg.user} -- {e}") from e

    def stop(self) -> None:
        if self.client:
            self.client.loop_stop()
            self.client.disconnect()
            self.client = None

    def is_available(self) -> bool:
        return self.client is not None and not self.fatal_failure.is_set()

    def on_connect(
        self, _client: mqtt.Client, _userdata: Any, _flags: mqtt.ConnectFlags, rc: ReasonCode, _props: Properties | None
    ) -> None:
        if rc.getName() == "Not authorized":
            self.fatal_failure.set()
            self.log.error("Invalid MQTT credentials", result_code=rc)
        elif rc != 0:
            self.log.warning("Connection failed to broker", result_code=rc)
        else:
            self.log.debug("Connected to broker", result_code=rc)

    def update_topic(self, update: ImageUpdate) -> str:
        return f"{self.cfg.topic_root}/{self.node_cfg.name}/{topic_slug(update.title)}"

    def publish(self, topic: str, payload: dict, qos: int = 0, retain: bool = True) -> None:
        if self.client:
            self.client.publish(topic, payload=json.dumps(payload), qos=qos, retain=retain)

    def notify(self, updates: list[ImageUpdate]) -> None:
        if not self.is_available():
            self.log.warning("MQTT client unavailable, %s updates not published", len(updates))
            return
        for update in updates:
            topic = self.update_topic(update)
            self.log.debug("Publishing update", topic=topic)
            self.publish(topic, update.as_dict())
