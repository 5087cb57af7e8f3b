import os

import uvicorn


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value else default


def main():
    host = _env_or_default("STREAMGATE_HOST", "127.0.0.1")
    port = int(_env_or_default("STREAMGATE_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
