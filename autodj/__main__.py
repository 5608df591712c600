"""Run the relay and its status server: ``python -m autodj``."""
from __future__ import annotations

import uvicorn

from autodj.core.config import settings
from autodj.main import create_app


def main() -> None:
    uvicorn.run(create_app(), host="0.0.0.0", port=settings.status_port, log_config=None)


if __name__ == "__main__":
    main()
