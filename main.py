from __future__ import annotations

import uvicorn

from inventario.config import load_settings


def main() -> None:
    settings = load_settings()

    uvicorn.run(
        "inventario.main:app",
        host="0.0.0.0",
        port=settings.app_port,
        reload=settings.reload,
    )


if __name__ == "__main__":
    main()
