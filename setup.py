"""
LexVault setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="lexvault",
    version="0.1.0",
    description="LexVault — versioned legal document repository",
    packages=find_packages(include=["lexvault", "lexvault.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "lexvault=lexvault.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "celery[redis]>=5.3",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
)
