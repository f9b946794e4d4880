"""Run the relay server with ``python -m chunk_relay``."""
import uvicorn

from .config import get_config
from .main import app


def main() -> None:
    config = get_config()
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        ws_ping_interval=config.server.ping_interval_seconds,
        ws_ping_timeout=config.server.ping_timeout_seconds,
        ws_max_size=config.transfer.max_buffer_size,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
