"""
DubFlow setup script.

Usage:
    # Development (editable install, links to source):
    pip install -e .[test]

    # Run the test suite:
    python -m pytest tests
"""

from setuptools import setup

setup(
    name="dubflow",
    version="1.0.0",
    description="Resumable video dubbing pipeline with a persistent task queue",
    packages=["dubflow", "dubflow.core"],
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "click>=8.1",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "dubflow=main:main",
        ],
    },
)
