"""
IoT Device Client entrypoint.

CLI:
  iot-device-client -p PROJECT -d DEVICE_PATH -t TOPIC [options]

Loads the device key, signs a JWT, connects, subscribes to the topic and publishes
the message periodically until SIGINT/SIGTERM. Exit code 0 after a graceful
shutdown, -1 on any fatal error.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Optional

from iot_device_client.config import ConfigError, ClientConfig, load_config, package_version
from iot_device_client.credentials import KeyLoadError, SigningError, load_credential
from iot_device_client.log_config import apply_log_level, configure_logging, level_from_cfg_or_env
from iot_device_client.messaging import Subscription, log_message
from iot_device_client.supervisor import (
    EXIT_FAILURE,
    ConnectionSettings,
    ConnectionSupervisor,
    PeriodicPublish,
)
from iot_device_client.transport import PahoTransport, TransportError

configure_logging()
logger = logging.getLogger(__name__)


def get_version_string() -> str:
    return package_version()


def _fail(message: str) -> int:
    print(message, file=sys.stderr)
    logger.error(message)
    return EXIT_FAILURE


def _install_signal_handlers(supervisor: ConnectionSupervisor) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        supervisor.request_stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def build_supervisor(cfg: ClientConfig) -> ConnectionSupervisor:
    """
    Load the key and wire transport, subscriptions and periodic publish together.

    Raises KeyLoadError or TransportError; nothing touches the network here.
    """
    credential = load_credential(
        cfg.private_key_path,
        cfg.project_id,
        cfg.device_path,
        capacity=cfg.key_capacity,
    )
    transport = PahoTransport(
        cfg.mqtt_host,
        cfg.mqtt_port,
        cfg.device_path,
        use_tls=cfg.use_tls,
        ca_certs=cfg.ca_certs,
    )
    settings = ConnectionSettings(
        client_id=cfg.device_path,
        connect_timeout=cfg.connect_timeout,
        keepalive=cfg.keepalive,
        token_ttl_s=cfg.token_ttl_s,
        refresh_token_on_reconnect=cfg.refresh_token_on_reconnect,
    )
    return ConnectionSupervisor(
        credential,
        transport,
        settings,
        subscriptions=[Subscription(cfg.subscribe_topic, cfg.subscribe_qos, log_message)],
        periodic_publish=PeriodicPublish(
            topic=cfg.publish_topic,
            payload=cfg.message.encode("utf-8"),
            qos=cfg.publish_qos,
            interval_s=cfg.publish_interval_s,
        ),
    )


def run_client(args: argparse.Namespace) -> int:
    """
    Runtime mode: validate config, load key, connect, block until shutdown.
    Returns process exit code.
    """
    overrides = {k: v for k, v in vars(args).items() if k != "version"}
    try:
        cfg = load_config(overrides)
    except ConfigError as exc:
        return _fail(str(exc))

    apply_log_level(level_from_cfg_or_env(cfg.log_level))

    logger.info("============================================================")
    logger.info("IoT Device Client")
    logger.info("Version: %s", cfg.client_version)
    logger.info("Device path: %s", cfg.device_path)
    logger.info("============================================================")

    try:
        supervisor = build_supervisor(cfg)
    except KeyLoadError as exc:
        return _fail(f"Error loading private key ({exc.reason.value}): {exc}")
    except TransportError as exc:
        return _fail(str(exc))

    # before start(): the TCP/TLS connect blocks for up to connect_timeout
    _install_signal_handlers(supervisor)
    try:
        supervisor.start()
    except SigningError as exc:
        return _fail(f"Failed to create JWT, error {exc.code}: {exc}")

    logger.info("Client running (shutdown via SIGINT/SIGTERM)")
    return supervisor.run()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="iot-device-client")
    p.add_argument("--version", action="version", version=get_version_string())

    p.add_argument("-p", "--project_id", help="Cloud project id (JWT audience)")
    p.add_argument("-d", "--device_path", help="Full device path, used as the MQTT client id")
    p.add_argument("-t", "--publish_topic", help="Topic to publish to")
    p.add_argument("-m", "--publish_message", dest="message", help="Message to publish (default: Message)")
    p.add_argument(
        "-f",
        "--private_key_filename",
        dest="private_key_path",
        help="PEM encoded ES256 private key (default: ec_private.pem)",
    )
    p.add_argument("--subscribe-topic", dest="subscribe_topic", help="Topic to subscribe to (default: publish topic)")
    p.add_argument("--host", dest="mqtt_host", help="Broker host")
    p.add_argument("--port", dest="mqtt_port", help="Broker port")
    p.add_argument("--ca-certs", dest="ca_certs", metavar="PATH", help="CA bundle for the broker's TLS certificate")
    p.add_argument("--no-tls", dest="use_tls", action="store_const", const=False, default=None, help="Connect without TLS")
    p.add_argument("--qos", dest="publish_qos", help="QoS for published messages (0, 1, 2)")
    p.add_argument("--publish-interval", dest="publish_interval_s", metavar="SECONDS", help="Seconds between publishes")
    p.add_argument("--token-ttl", dest="token_ttl_s", metavar="SECONDS", help="JWT lifetime in seconds")
    p.add_argument(
        "--no-token-refresh",
        dest="refresh_token_on_reconnect",
        action="store_const",
        const=False,
        default=None,
        help="Reuse the startup token on reconnect even when it is about to expire",
    )
    p.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING, ERROR")
    return p


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    raise SystemExit(run_client(args))


if __name__ == "__main__":
    main()
