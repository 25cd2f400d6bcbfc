from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click

from flagmon.config_loader import build_config
from flagmon.env_loader import load_env_file
from flagmon.errors import CaptureFileError, CaptureSourceError, ConfigError
from flagmon.logging_setup import correlation_context, setup_logging
from flagmon.monitor import build_monitor

LOGGER = logging.getLogger(__name__)


@click.group()
def main() -> None:
    """flagmon commands."""
    load_env_file(Path(".env"))
    setup_logging()
    LOGGER.info("CLI bootstrap completed", extra={"category": "CONFIG"})


@main.command()
@click.option("-i", "--iface", "interface", default=None, help="Network interface to capture packets on.")
@click.option("-p", "--port", type=int, default=None, help="TCP port to monitor.")
@click.option("-w", "--write", "pcap_template", default=None, help="Capture file name; strftime format is allowed.")
@click.option("-d", "--rotate", "rotate_interval", default=None, help="Rotation interval of the capture file.  [default: 1h]")
@click.option("-z", "--post-rotate", "post_rotate_command", default=None, help="Command run with each rotated file.")
@click.option("--flag-w", "flag_pcap_template", default=None, help="File name for matching sessions; strftime format is allowed.")
@click.option("--flag-d", "flush_interval", default=None, help="Interval of flushing sessions.  [default: 5m]")
@click.option("--flag-z", "flag_post_command", default=None, help="Command run with each matching-session file.")
@click.option("--flag", "pattern", default=None, help="Regular expression searched in session payloads.")
@click.option("--snaplen", type=int, default=None, help="Max captured bytes per packet.  [default: 1600]")
@click.option("--promisc/--no-promisc", default=None, help="Put the interface in promiscuous mode.")
@click.option("--replay", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None, help="Read packets from a pcap file instead of an interface.")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None, help="YAML configuration file.")
def monitor(
    interface: Optional[str],
    port: Optional[int],
    pcap_template: Optional[str],
    rotate_interval: Optional[str],
    post_rotate_command: Optional[str],
    flag_pcap_template: Optional[str],
    flush_interval: Optional[str],
    flag_post_command: Optional[str],
    pattern: Optional[str],
    snaplen: Optional[int],
    promisc: Optional[bool],
    replay: Optional[Path],
    config_path: Optional[Path],
) -> None:
    """Archive traffic on a port and dump sessions matching a pattern."""
    try:
        config = build_config(
            config_path,
            interface=interface,
            port=port,
            pcap_template=pcap_template,
            rotate_interval=rotate_interval,
            post_rotate_command=post_rotate_command,
            flag_pcap_template=flag_pcap_template,
            flush_interval=flush_interval,
            flag_post_command=flag_post_command,
            pattern=pattern,
            snaplen=snaplen,
            promisc=promisc,
            replay=replay,
        )
    except ConfigError as exc:
        raise click.UsageError(str(exc)) from exc

    LOGGER.info(
        "CLI monitor command iface=%s port=%s write=%s rotate_s=%s flag_write=%s flush_s=%s pattern=%s",
        config.interface or "-",
        config.port or "-",
        config.pcap_template,
        config.rotate_interval,
        config.flag_pcap_template or "-",
        config.flush_interval,
        config.pattern or "-",
        extra={"category": "CONFIG"},
    )
    with correlation_context():
        try:
            mon = build_monitor(config)
        except (CaptureFileError, CaptureSourceError) as exc:
            raise click.ClickException(str(exc)) from exc
        mon.install_signal_handlers()
        try:
            mon.run()
        except (CaptureFileError, CaptureSourceError) as exc:
            LOGGER.error("Capture aborted error=%s", exc, extra={"category": "ERRORS"})
            raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":
    main()
