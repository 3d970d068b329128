"""Entry point for running the Courier API as a module.

Usage:
    python -m courier.api
"""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "courier.api:app",
        host=os.environ.get("COURIER_HOST", "127.0.0.1"),
        port=int(os.environ.get("COURIER_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
