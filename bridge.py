import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv

from shutdown import ShutdownCoordinator
from sinks.influx import InfluxWriter
from sources.tibber import TIBBER_WSS_URL, SessionHandle, TibberSession

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = "tibber-influx-bridge.env"

# Environment variable -> BridgeConfig attribute
REQUIRED_SETTINGS = {
    "TIBBER_TOKEN": "auth_token",
    "TIBBER_HOME_ID": "home_id",
    "INFLUX_HOST": "influx_host",
    "INFLUX_DATABASE": "influx_database",
    "INFLUX_MEASUREMENT": "influx_measurement",
}


@dataclass(frozen=True)
class BridgeConfig:
    auth_token: str
    home_id: str
    influx_host: str
    influx_database: str
    influx_measurement: str
    wss_url: str = TIBBER_WSS_URL


def get_config() -> BridgeConfig:
    """Read settings from the environment with hard fail on misconfiguration"""
    values = {}
    missing = []
    for name, attribute in REQUIRED_SETTINGS.items():
        value = os.getenv(name, "").strip()
        if not value:
            missing.append(name)
        values[attribute] = value

    if missing:
        for name in missing:
            logger.error(f"{name} not configured")
        sys.exit(1)

    wss_url = os.getenv("TIBBER_WSS_URL", "").strip() or TIBBER_WSS_URL
    return BridgeConfig(wss_url=wss_url, **values)


async def main(config: BridgeConfig):
    writer = InfluxWriter(
        host=config.influx_host,
        database=config.influx_database,
        measurement=config.influx_measurement
    )
    logger.info(
        f"Writing to InfluxDB {config.influx_host}, "
        f"database {config.influx_database}, measurement {config.influx_measurement}"
    )

    handle = SessionHandle()
    session = TibberSession(
        token=config.auth_token,
        home_id=config.home_id,
        writer=writer,
        url=config.wss_url,
        handle=handle
    )

    # Interrupts stop the session cooperatively, bounded by a hard cutoff
    coordinator = ShutdownCoordinator(handle)
    await coordinator.run(session.run())


if __name__ == "__main__":
    # Parse command line arguments
    parser = argparse.ArgumentParser(description="Tibber Pulse to InfluxDB bridge")
    parser.add_argument(
        "--env-file",
        type=str,
        default=DEFAULT_ENV_FILE,
        help=f"Configuration file (default: {DEFAULT_ENV_FILE})"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)"
    )
    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=args.log_level,
        format='%(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    # Load configuration from single .env file
    load_dotenv(args.env_file)
    config = get_config()

    asyncio.run(main(config))
    logger.info("Bridge stopped.")
