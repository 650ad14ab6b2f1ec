import os
import typing
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

import structlog
from omegaconf import MISSING, DictConfig, MissingMandatoryValue, OmegaConf, ValidationError
from omegaconf.errors import InterpolationToMissingValueError

log = structlog.get_logger()


class LogLevel(StrEnum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class Selector:
    include: list[str] | None = None
    exclude: list[str] | None = None


@dataclass
class RegistryConfig:
    user_agent: str = "Lighthouse"
    timeout: float = 30.0  # seconds, applies to connect, read and write
    max_connections: int = 10
    stats_report_interval: int = 100


@dataclass
class DockerConfig:
    enabled: bool = True
    containers: Selector = field(default_factory=Selector)
    images: Selector = field(default_factory=Selector)


@dataclass
class DiscordConfig:
    enabled: bool = False
    webhook_url: str = "${oc.env:LIGHTHOUSE_DISCORD_WEBHOOK,''}"
    username: str = "Lighthouse"


@dataclass
class MqttConfig:
    enabled: bool = False
    host: str = "${oc.env:MQTT_HOST,localhost}"
    user: str = f"${{oc.env:MQTT_USER,{MISSING}}}"
    password: str = f"${{oc.env:MQTT_PASS,{MISSING}}}"
    port: int = "${oc.decode:${oc.env:MQTT_PORT,1883}}"  # type: ignore[assignment]
    topic_root: str = "lighthouse"
    protocol: str = "${oc.env:MQTT_VERSION,3.11}"


@dataclass
class NodeConfig:
    name: str = field(default_factory=lambda: os.uname().nodename.replace(".local", ""))


@dataclass
class LogConfig:
    level: LogLevel = "${oc.decode:${oc.env:LIGHTHOUSE_LOG_LEVEL,INFO}}"  # type: ignore[assignment] # pyright: ignore[reportAssignmentType]


@dataclass
class Config:
    log: LogConfig = field(default_factory=LogConfig)  # pyright: ignore[reportArgumentType, reportCallIssue]
    node: NodeConfig = field(default_factory=NodeConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)  # pyright: ignore[reportArgumentType, reportCallIssue]
    scan_interval: int = 60 * 60 * 6


def is_autogen_config() -> bool:
    env_var: str | None = os.environ.get("LIGHTHOUSE_AUTOGEN_CONFIG")
    return not (env_var and env_var.lower() in ("no", "0", "false"))


def has_mqtt_credentials(mqtt_cfg: MqttConfig) -> bool:
    try:
        return mqtt_cfg.user not in ("", MISSING) and mqtt_cfg.password not in ("", MISSING)
    except InterpolationToMissingValueError:
        # env var unset, interpolation fell back to ???
        return False


def load_app_config(conf_file_path: Path, return_invalid: bool = False) -> Config | None:
    base_cfg: DictConfig = OmegaConf.structured(Config)
    if conf_file_path.exists():
        cfg: DictConfig = typing.cast("DictConfig", OmegaConf.merge(base_cfg, OmegaConf.load(conf_file_path)))
    elif is_autogen_config():
        if not conf_file_path.parent.exists():
            try:
                log.debug(f"Creating config directory {conf_file_path.parent} if not already present")
                conf_file_path.parent.mkdir(parents=True, exist_ok=True)
            except Exception:
                log.warning("Unable to create config directory", path=conf_file_path.parent)
        try:
            conf_file_path.write_text(OmegaConf.to_yaml(base_cfg))
            log.info(f"Auto-generated a new config file at {conf_file_path}")
        except Exception:
            log.warning("Unable to write config file", path=conf_file_path)
        cfg = base_cfg
    else:
        cfg = base_cfg

    try:
        # Validate that all required fields are present, throw exception now rather than when config first used
        OmegaConf.to_container(cfg, throw_on_missing=True)
        OmegaConf.set_readonly(cfg, True)
        config: Config = typing.cast("Config", cfg)

        valid = True
        if config.discord.enabled and not config.discord.webhook_url:
            log.info("Discord notifications enabled but no webhook URL configured")
            valid = False
        if config.mqtt.enabled and not has_mqtt_credentials(config.mqtt):
            log.info("The config has place holders for MQTT user and/or password")
            valid = False
        if not valid and not return_invalid:
            return None
        return config
    except (MissingMandatoryValue, ValidationError) as e:
        log.error("Configuration error %s", e, path=conf_file_path.as_posix())
        if return_invalid and cfg is not None:
            return typing.cast("Config", cfg)
        raise
