"""Setup configuration for storefront-order-engine project."""

from setuptools import setup, find_packages

setup(
    name="storefront-order-engine",
    version="1.0.0",
    description="Order and inventory engine for a storefront: oversell-proof stock, idempotent payment notifications",
    author="Your Name",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.109.0",
        "uvicorn>=0.27.0",
        "redis>=5.0.0",
        "confluent-kafka>=2.3.0",
        "sqlalchemy>=2.0.23",
        "psycopg2-binary>=2.9.9",
        "pydantic>=2.7.0",
        "pydantic-settings>=2.1.0",
        "requests>=2.31.0",
        "tenacity>=8.2.3",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "httpx>=0.26.0",
        ],
    },
)
