from setuptools import setup, find_packages

setup(
    name="tokenflow",
    version="1.0.0",
    description="Token transfer ingestion service: historical backfill and live streaming",
    packages=find_packages(include=["tokenflow", "tokenflow.*"]),
    python_requires=">=3.11",
    install_requires=[
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "pydantic>=2.0.0",
        "python-dotenv>=0.19.0",
        "aiohttp>=3.9.0",    # For HTTP client
        "websockets>=14.1",  # For WebSocket client
        "tenacity>=8.2.0",
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",  # In-memory store for repository tests
        ]
    },
    entry_points={
        "console_scripts": [
            "tokenflow-ingest=tokenflow.services.ingestion.main:run",
        ]
    }
)
