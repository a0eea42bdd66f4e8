#!/usr/bin/env python
"""
Minimal setup.py bridge for legacy editable installs.
All project metadata lives in pyproject.toml.
"""

from setuptools import setup

# All configuration is in pyproject.toml
setup()
