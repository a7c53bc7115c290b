"""
Zenith Engine - Parameter optimization and walk-forward validation for trading strategies
"""
from setuptools import setup, find_packages
from pathlib import Path

# Read the contents of README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

setup(
    name="zenith-engine",
    version="0.1.0",
    description="Parameter sweep and walk-forward optimization engine for trading strategies",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="",
    author_email="",
    packages=find_packages(exclude=["tests*", "docs*", "alembic*"]),
    python_requires=">=3.10",
    install_requires=[
        "sqlalchemy>=2.0.0",
        "alembic>=1.12.0",
        "python-dotenv>=1.0.0",
        "pyyaml>=6.0.1",
        "pandas>=2.1.0",
        "python-dateutil>=2.8.2",
        "pydantic>=2.5.0",
        "tqdm>=4.66.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "black>=23.12.0",
            "isort>=5.13.0",
            "flake8>=7.0.0",
            "mypy>=1.7.1",
        ],
        "postgres": [
            "psycopg2-binary>=2.9.9",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    keywords="backtesting trading optimization walk-forward grid-search",
)
