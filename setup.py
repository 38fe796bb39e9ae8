"""Setup script for flashtile package."""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="flashtile",
    version="0.1.0",
    author="flashtile Team",
    description="Tiled (flash) scaled dot-product attention with online softmax",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["flashtile", "flashtile.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.0.0",
        "numpy>=1.21.0",
    ],
    entry_points={
        "console_scripts": [
            "flashtile-diagnostics=flashtile.diagnostics:main",
        ],
    },
    extras_require={
        "dev": [
            "pytest>=7.0.0",
        ],
    },
)
