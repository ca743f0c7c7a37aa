"""
ClipScribe — setuptools build script.

Usage:
    # Development install:
    pip install -e .[test]

    # Run:
    python3 main.py subtitles movie.mp4 --provider remote_bcut
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "clipscribe"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Batch media transcoding and subtitle generation",
    packages=find_namespace_packages(include=["clipscribe", "clipscribe.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "clipscribe=main:main",
        ],
    },
)
