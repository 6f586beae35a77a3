import argparse


def main():
    p = argparse.ArgumentParser(description="Run the Meera AI backend")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8010)
    args = p.parse_args()

    from meera.config import Config, setup_logging
    setup_logging()

    import uvicorn
    uvicorn.run("meera.app:create_app", factory=True, host=args.host, port=args.port, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
