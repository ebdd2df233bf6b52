"""Setup script for the PropLinka marketplace backend."""

from setuptools import setup, find_packages

setup(
    name="proplinka",
    version="1.0.0",
    description="Flat-fee real estate marketplace API with Stripe Checkout settlement",
    author="PropLinka",
    python_requires=">=3.10",
    packages=find_packages(include=["proplinka", "proplinka.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
            "fakeredis>=2.20.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "proplinka-reconciliation=proplinka.workers.reconciliation_worker:main",
            "proplinka-listing-expiry=proplinka.workers.listing_expiry_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
