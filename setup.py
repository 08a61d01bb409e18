"""
Setup file.
"""

import os

from setuptools import find_packages, setup

URL = "https://github.com/crossbin/crossbin"
KEYWORDS = "cross-compile static musl toolchain cargo reproducible build cache"
HERE = os.path.dirname(os.path.abspath(__file__))


def read_readme() -> str:
    readme = os.path.join(HERE, "README.md")
    if not os.path.exists(readme):
        return ""
    with open(readme, encoding="utf-8") as f:
        return f.read()


if __name__ == "__main__":
    setup(
        name="crossbin",
        version="0.1.0",
        description="Reproducible cross-platform static binary build orchestrator",
        long_description=read_readme(),
        long_description_content_type="text/markdown",
        keywords=KEYWORDS,
        url=URL,
        python_requires=">=3.10",
        package_dir={"": "src"},
        packages=find_packages("src"),
        install_requires=[
            "requests>=2.28",
            "tqdm>=4.64",
            "psutil>=5.9",
            "pyelftools>=0.29",
            "toml>=0.10",
        ],
        extras_require={
            "test": ["pytest>=7.0"],
        },
        entry_points={
            "console_scripts": [
                "crossbin=crossbin.cli:main",
            ],
        },
        include_package_data=True)
