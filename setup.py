#!/usr/bin/env python3

from setuptools import setup, find_packages

setup(
    name="deqjs",
    version="0.1.0",
    description="QuickJS bytecode (.jsc) decompiler",
    packages=find_packages(include=["deqjs", "deqjs.*"]),
    package_data={
        "deqjs": ["config.json5"],
        "deqjs.quickjs": ["data/*.yaml"],
    },
    python_requires=">=3.10",
    install_requires=[
        "json5",
        "PyYAML",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "deqjs=deqjs.cli:main",
        ],
    },
)
