from pathlib import Path
import argparse
import sys

from fastapi import FastAPI
import uvicorn

# Resolve project root (two levels up from this file: client/main.py -> project root)
PROJECT_ROOT = Path(__file__).resolve().parent.parent
# Ensure project root on sys.path so `import client.*` works when running as a script
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from client.routers.game_router import router as game_router  # noqa: E402

app = FastAPI(title="session sync client")


# Health check
@app.get("/healthz")
def healthz():
    return {"status": "ok"}


app.include_router(game_router, prefix="/v1/game", tags=["game"])


def main() -> None:
    parser = argparse.ArgumentParser(description="Local view of one board-game session, served to a UI")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
