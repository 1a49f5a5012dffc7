#!/usr/bin/env python3
"""
Setup script for the Grapevine intermud client
"""

from setuptools import setup, find_packages

setup(
    name="grapevine-client",
    version="0.1.0",
    description="Client for the Grapevine intermud network",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "websockets>=15.0",
        "typer>=0.12.3",
        "rich>=13.9.2",
        "aioconsole>=0.8.1",
        "PyYAML>=6.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.4.2",
            "pytest-asyncio>=1.2.0",
        ],
    },
    python_requires=">=3.9",
    entry_points={
        'console_scripts': [
            'grapevine=grapevine.cli:main',
        ],
    },
)
