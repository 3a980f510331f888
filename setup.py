"""
Setup script for learnbuild.

learnbuild turns uploaded course material into grounded, adaptive learning
paths. It covers four stages:

1. Lesson docs - retrieval-grounded doc generation with validation and repair
2. Media - figure and video generation with deterministic asset storage
3. Adaptation - probe selection, runtime (cadence) plans, variant evaluation
4. Maintenance - trace compaction and path grouping refinement

The 'learnbuild' command is the entry point.
"""

from setuptools import find_namespace_packages, setup

setup(
    name="learnbuild",
    version="0.1.0",
    description="Grounded lesson docs, adaptive probes and runtime plans for learning paths",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_namespace_packages(include=["src", "src.*"]),
    py_modules=["config"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy>=2.0.0,<2.1",
        "psycopg2-binary>=2.9.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        # Logging
        "loguru>=0.7.0",
        # Vectors
        "numpy>=1.24.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "learnbuild=src.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
    ],
    keywords="learning adaptive education retrieval llm",
)
