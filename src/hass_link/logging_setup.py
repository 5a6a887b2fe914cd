"""Logging configuration for applications embedding the client."""

import logging
from pathlib import Path
from typing import List, Optional, Union


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
    websockets_level: Union[int, str] = logging.WARNING,
) -> None:
    """
    Set up root logging.

    Args:
        level: Level for everything, including ``hass_link``
        log_file: Also write to this file (parent directories are created)
        websockets_level: The websockets library is chatty at DEBUG
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode='a'))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

    logging.getLogger('websockets').setLevel(websockets_level)
