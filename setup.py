#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Setup script for ClinicalData

This file is kept for legacy compatibility and pip editable installs.
The main package configuration is in pyproject.toml.
"""

from pathlib import Path

from setuptools import find_packages, setup

# Version is also set in pyproject.toml
VERSION = "1.0.0"

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
if readme_file.exists():
    long_description = readme_file.read_text(encoding="utf-8")
else:
    long_description = "ClinicalData - Double Data-Entry Reconciliation Engine"

# Main setup configuration is in pyproject.toml
# This just pins the package list for editable installs
setup(
    version=VERSION,
    long_description=long_description,
    packages=find_packages(include=["clinicaldata", "clinicaldata.*"]),
)
