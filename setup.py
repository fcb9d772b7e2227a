from setuptools import setup, find_packages

setup(
    name="pg-autoresize",
    version="0.1.0",
    packages=find_packages(include=["pgautoresize", "pgautoresize.*"]),
    py_modules=["run"],
    install_requires=[
        "kubernetes>=29.0.0",
        "prometheus-client>=0.17.0",
        "psutil>=5.9.0",
        "python-dotenv>=1.0.0",
        "PyYAML>=6.0",
        "tabulate>=0.9.0",
        "asyncpg>=0.29.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pg-autoresize=run:main",
            "storage-status=pgautoresize.scripts.storage_status:main",
        ],
    },
    python_requires=">=3.9",
)
