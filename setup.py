"""
Setup configuration for spot-trader package.
"""
from setuptools import setup, find_packages

setup(
    name="spot-trader",
    version="0.1.0",
    description="Spot trading loop driven by LLM advisory signals, with signed venue orders and a SQLite trade ledger",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Spot Trader Team",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*", "scripts"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.8.0,<4.0",
        "pyyaml>=6.0,<7.0",
        "loguru>=0.7.0,<1.0",
        "pydantic>=2.5.0,<3.0",
        "openai>=1.0.0,<3.0",
        "eth-account>=0.10.0,<1.0",
        "eth-keys>=0.4.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
        "dev": [
            "black>=23.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
            "isort>=5.12.0",
            "pytest-cov>=4.0.0",
            "pre-commit>=3.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "spot-trader=spot_trader.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
