"""Run the gateway with uvicorn: ``python -m search_gateway``."""

import uvicorn

from search_gateway.app import get_config


def main() -> None:
    cfg = get_config()
    uvicorn.run(
        "search_gateway.app:app",
        host=cfg.server.host,
        port=cfg.server.port,
        log_level=cfg.log_level.lower(),
        proxy_headers=cfg.trust_proxy,
    )


if __name__ == "__main__":
    main()
