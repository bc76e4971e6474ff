# src/peerlink/api/__main__.py
from __future__ import annotations

import uvicorn

from peerlink.env import load_dotenv_if_present


def main() -> None:
    # Load .env early so PEERLINK_* vars exist before anything reads them.
    load_dotenv_if_present()

    # Import after dotenv load (prevents "config read before env" surprises)
    from peerlink.api.app import create_app
    from peerlink.config import load_config
    from peerlink.service import PeerlinkService
    from peerlink.structured_logging import configure_structured_logging

    cfg = load_config()
    configure_structured_logging(cfg.log_level)
    app = create_app(PeerlinkService(cfg))

    uvicorn.run(app, host=cfg.api_host, port=int(cfg.api_port), log_level=cfg.log_level.lower())


if __name__ == "__main__":
    main()
