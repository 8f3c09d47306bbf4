from setuptools import setup, find_packages

setup(
    name="volsurf",
    version="0.3.0",
    description="Rate-limited option chain ingestion and implied volatility surface construction",
    author="Leo",
    author_email="tabbakhianhatef@gmail.com",
    url="https://github.com/Leotaby/vol-surface-builder",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "pandas>=2.0,<3",
        "scipy>=1.11",
        "matplotlib>=3.7",
        "plotly>=5.15",
        "structlog>=23.1",
        "tenacity>=8.2",
    ],
    extras_require={
        "live": ["yfinance>=0.2.30"],
        "dev": ["pytest>=7.0", "pytest-asyncio>=0.21", "black", "flake8"],
    },
    entry_points={
        "console_scripts": [
            "vol-surface=main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Topic :: Office/Business :: Financial",
        "Topic :: Scientific/Engineering",
    ],
)
