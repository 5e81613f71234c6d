"""Setup configuration for jobctl."""

from setuptools import setup, find_packages

setup(
    name="jobctl",
    version="1.0.0",
    description="Persistent background job queue with retries and a dead letter queue",
    packages=find_packages(include=["jobctl", "jobctl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "structlog>=23.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "jobctl=jobctl.cli:cli",
        ],
    },
    python_requires=">=3.9",
)
