"""
Logging configuration for the EAS client
"""
import logging
import os
from datetime import datetime

from .config import settings

WIRE_LOGGER = "easclient.wire"


def setup_logging(level=None, log_dir=None):
    """Console + per-run file logs, and a separate file for WBXML wire traces"""

    level = level or settings.LOG_LEVEL
    log_dir = log_dir or settings.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(os.path.join(log_dir, f'eas_client_{timestamp}.log')),
        ],
    )

    # Wire traces are noisy; keep them out of the console
    wire_logger = logging.getLogger(WIRE_LOGGER)
    wire_logger.setLevel(logging.DEBUG)
    wire_logger.propagate = False
    wire_handler = logging.FileHandler(os.path.join(log_dir, f'eas_wire_{timestamp}.log'))
    wire_handler.setFormatter(logging.Formatter('%(asctime)s - WIRE - %(levelname)s - %(message)s'))
    wire_logger.addHandler(wire_handler)

    # urllib3 logs every connection at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    return logging.getLogger(__name__)


def log_wire(direction, command, payload, redact=None):
    """Dump a WBXML payload as a decoded element tree (hex if it does not decode)"""
    wire_logger = logging.getLogger(WIRE_LOGGER)
    if not wire_logger.isEnabledFor(logging.DEBUG) or not payload:
        return
    redact = settings.REDACT if redact is None else redact

    from .errors import MalformedStream
    from .wbxml_parser import describe

    wire_logger.debug(f"{direction} {command} ({len(payload)} bytes)")
    try:
        tree = describe(payload)
    except MalformedStream as e:
        wire_logger.debug(f"  not WBXML ({e}): {payload[:64].hex()}")
        return
    for line in tree.splitlines():
        if redact and not line.strip().startswith("<"):
            line = line[: len(line) - len(line.lstrip())] + f"[{len(line.strip())} chars]"
        wire_logger.debug(f"  {line}")
