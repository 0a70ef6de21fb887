import sys
import logging
from typing import Optional, Sequence

from .config import load_config
from .errors import SourceMissingError
from .runner import Runner

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_SOURCE_MISSING = 2


def setup_logging(debug: bool):
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    config = load_config(argv)
    setup_logging(config.debug)
    try:
        summary = Runner(config).execute()
    except SourceMissingError as e:
        logging.getLogger("fleet.runner").error("Aborting, nothing was changed: %s", e)
        return EXIT_SOURCE_MISSING
    except Exception as e:
        print(f"FATAL ERROR: {e}")
        return EXIT_FAILED
    return EXIT_OK if summary.all_succeeded else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
