"""
SQL Probe Agent - Setup Script
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="sql-probe-agent",
    version="1.0.0",
    author="SQL Probe Team",
    description="Site-resident agent that runs allowlisted SQL for a remote controller",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Operating System :: Microsoft :: Windows",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
        "Topic :: System :: Networking",
    ],
    python_requires=">=3.10",
    install_requires=[
        "websockets>=13.0",
        "pyodbc>=5.0.0",
        "PyYAML>=6.0",
        "pydantic>=2.0",
        "cryptography>=41.0",
        "psycopg[binary]>=3.1",
        "psycopg-pool>=3.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "probe-agent=probe_agent.main:main",
        ],
    },
)
