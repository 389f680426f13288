"""Setup script for the POS payment reconciliation service."""

from setuptools import setup, find_packages

setup(
    name="pos-payments",
    version="1.0.0",
    description="POS payment status reconciliation over the Pesapal gateway",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "locust>=2.20.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "pos-payments-worker=pos_payments.workers.reconciliation_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
