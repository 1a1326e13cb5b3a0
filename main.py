import os

from src.server.api import create_app

app = create_app()

def main():
    import uvicorn

    print("Planet economy server starting...")
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", 8000))
    reload_flag = os.environ.get("RELOAD", "").lower() in {"1", "true", "yes", "on"}
    uvicorn.run("main:app", host=host, port=port, reload=reload_flag)

if __name__ == "__main__":
    main()
