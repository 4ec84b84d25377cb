"""
Setup configuration for the leprechaun-trader package.
"""
from setuptools import setup, find_packages

setup(
    name="leprechaun-trader",
    version="0.1.0",
    description="Automated Luno spot trading bot with a durable position ledger",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Leprechaun Team",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*", "examples", "scripts"]),
    python_requires=">=3.9",
    install_requires=[
        "requests>=2.28.0,<3.0",
        "urllib3>=1.26.0",
        "pyyaml>=6.0,<7.0",
        "loguru>=0.7.0,<1.0",
        "pydantic>=2.0.0,<3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
        "encryption": [
            "sqlcipher3-binary>=0.5.0",
        ],
        "dev": [
            "black>=23.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
            "isort>=5.12.0",
            "pytest-cov>=4.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "leprechaun=leprechaun.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
