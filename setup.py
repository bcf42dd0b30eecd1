import re
import os
from os import path
from setuptools import setup, find_packages


here = path.abspath(path.dirname(__file__))

with open(path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

with open(os.path.join(here, "modtrust/__init__.py"), encoding="utf-8") as init_file:
    version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]", init_file.read(), re.M)
    if not version_match:
        raise RuntimeError("Unable to find version string in modtrust/__init__.py")
    version_string = version_match.group(1)


requirements = [
    # CLI
    "click>=8.1.0",

    # MOK key pair and certificate
    "cryptography>=41.0.7",

    # Configuration
    "python-dotenv>=1.0.0",
]

test_requirements = [
    "pytest>=7.4.0",
]

setup(
    name="modtrust",
    version=version_string,
    description="Keep out-of-tree kernel modules signed, registered and loaded under Secure Boot",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(include=["modtrust", "modtrust.*"]),
    include_package_data=True,
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        "test": test_requirements,
    },
    entry_points={
        "console_scripts": [
            "modtrust=modtrust.cli:main",
            "modtrust-hook=modtrust.cli:hook_main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Topic :: System :: Boot",
        "Topic :: System :: Systems Administration",
    ],
)
