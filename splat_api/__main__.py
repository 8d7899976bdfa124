import os

import uvicorn

from .main import app


def main() -> None:
    uvicorn.run(
        app,
        host=os.environ.get("SPLAT_HOST", "0.0.0.0"),
        port=int(os.environ.get("SPLAT_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
