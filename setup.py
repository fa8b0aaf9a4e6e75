# setup.py
from setuptools import setup, find_packages

setup(
    name="link_audit",
    version="0.1.0",
    description="Асинхронная проверка битых ссылок LinkAudit",
    packages=find_packages(include=["link_audit", "link_audit.*"]),
    install_requires=[
        "aiohttp>=3.9",
        "beautifulsoup4>=4.12",
        "soupsieve>=2.5",
        "pydantic>=2.5",
        "PyYAML>=6.0",
        "click>=8.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "linkaudit=link_audit.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
