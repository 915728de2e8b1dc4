"""Setup script for the HERMES orchestration backend."""

from setuptools import find_packages, setup

setup(
    name="hermes-orchestration",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "httpx>=0.27",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "prometheus-client>=0.20",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "redis>=5.0",
        "structlog>=24.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    description="HERMES - multi-stage analysis orchestration with shared-state aggregation",
    author="HERMES Team",
)
