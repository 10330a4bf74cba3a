from pathlib import Path
from setuptools import find_packages, setup


ROOT = Path(__file__).parent


def read_readme() -> str:
    readme = ROOT / "README.md"
    return readme.read_text() if readme.exists() else ""


setup(
    name="solsync",
    version="0.1.0",
    description="Account state cache, blockhash pool and transaction packer for Solana clients",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["solsync", "solsync.*"]),
    python_requires=">=3.10",
    install_requires=[
        "solders>=0.21",
        "solana>=0.34,<0.37",
        "cachetools>=5.3",
    ],
    extras_require={
        "test": [
            "pytest>=7",
            "pytest-asyncio>=0.21",
        ],
    },
)
