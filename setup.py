from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
try:
    with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
        long_description = f.read()
except FileNotFoundError:
    long_description = "Capacity Finder - find how many concurrent GPU encodes a host sustains"

setup(
    name="capacity-finder",
    version="1.0.0",
    description="Load-test a GPU encoding host and recommend its sustainable encode concurrency",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Video :: Conversion",
        "Topic :: System :: Benchmark",
    ],
    python_requires=">=3.9",
    install_requires=[
        "tqdm>=4.0.0",
        "psutil>=5.0.0",  # CPU, load and RAM sampling
    ],
    extras_require={
        "dev": [
            "pytest",
            "black",
            "flake8",
        ],
    },
    entry_points={
        "console_scripts": [
            "capacity-finder=capacity_finder.cli:main_capacity",
            "capacity-analyze=capacity_finder.cli:main_analyze",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
