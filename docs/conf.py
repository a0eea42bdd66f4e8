# Configuration file for the Sphinx documentation builder.
import os
import sys

sys.path.insert(0, os.path.abspath("../src"))

from omnisync import __version__  # noqa: E402

# -- Project information -----------------------------------------------------
project = "omnisync"
copyright = "2025, 1minds3t"
author = "1minds3t"
release = __version__

# -- General configuration ---------------------------------------------------
extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
    "myst_parser",  # For markdown support
]

source_suffix = {".rst": "restructuredtext", ".md": "markdown"}
root_doc = "index"
exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]

autodoc_member_order = "bysource"

# -- Options for HTML output -------------------------------------------------
html_theme = "furo"
html_title = "omnisync Documentation"

html_theme_options = {
    "sidebar_hide_name": False,
    "navigation_with_keys": True,
}
