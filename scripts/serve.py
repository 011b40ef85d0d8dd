"""Start the HTTP service on the configured port."""

from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import uvicorn

from backdrop_service.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("backdrop_service.api:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
