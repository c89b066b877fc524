#!/usr/bin/env python3
"""
Setup script for gitops-deployer.
Installs the deployment engine and its command line entry point.
"""

from setuptools import setup, find_packages

setup(
    name="gitops-deployer",
    version="1.0.0",
    description="Docker Swarm image rollout with GitOps manifest bookkeeping",
    python_requires=">=3.9",
    packages=find_packages(include=["gitops_deployer", "gitops_deployer.*"]),
    install_requires=[
        "httpx>=0.24",
        "pydantic>=2.0",
        "PyYAML>=6.0",
        "boto3>=1.26",
        "tabulate>=0.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "gitops-deployer=gitops_deployer.cli:main",
        ],
    },
)
