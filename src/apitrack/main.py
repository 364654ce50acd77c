"""Server entrypoint for the apitrack API."""

from __future__ import annotations

import uvicorn

from apitrack.api import create_app

app = create_app()


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    uvicorn.run(
        "apitrack.main:app",
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    run()
