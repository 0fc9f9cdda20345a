"""Gateway launcher: starts Uvicorn."""
from __future__ import annotations
import os


def main() -> None:
    # Start the ASGI server
    import uvicorn

    uvicorn.run(
        "m365_gateway.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
