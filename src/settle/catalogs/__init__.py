# Copyright (c) Syntropy Systems
"""Built-in policy catalogs shipped as YAML package data."""
