"""Run the code runner with Uvicorn: ``python -m coderunner.api``."""

from __future__ import annotations

import uvicorn

from .main import app


def main() -> None:
    config = app.state.config
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
