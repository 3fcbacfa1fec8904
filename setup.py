"""Setup script for the Compliflow package."""

from setuptools import setup, find_packages

setup(
    name="compliflow",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"compliflow.templates": ["*.json"]},
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.6",
        "pydantic-core>=2.14",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "tenacity>=8.2",
        "prometheus-client>=0.20",
        "httpx>=0.27",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "asyncpg>=0.29",
        "sqlalchemy>=2.0",
        "alembic>=1.13",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "pytest-httpx>=0.30",
        ],
    },
    description="Compliflow - event-sourced multi-agent compliance workflow orchestration",
    author="Compliflow Team",
)
