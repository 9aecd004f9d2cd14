from setuptools import setup, find_packages

setup(
    name="llmrelay",
    version="0.1.0",
    packages=find_packages(include=["relay", "relay.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "starlette",
        "pydantic>=2",
        "pydantic-settings>=2.7",
        "redis>=5",
        "httpx",
        "sqlalchemy[asyncio]>=2",
        "aiosqlite",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "respx",
            "fakeredis[lua]",
        ],
        "server": [
            "uvicorn",
        ],
    },
)
