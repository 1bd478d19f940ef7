# Sphinx configuration for the simrecon API documentation.
# Build with: sphinx-build -b html docs docs/_build

from simrecon import __version__

# -- Project information -----------------------------------------------------

project = 'simrecon'
release = __version__

# -- General configuration ---------------------------------------------------

extensions = ['sphinx.ext.autodoc', 'sphinx.ext.mathjax']

exclude_patterns = ['_build']

master_doc = "index"

# reST field lists in docstrings, e.g. ":param params:"
autoclass_content = "both"
autodoc_typehints = "description"
autodoc_member_order = "bysource"

# -- Options for HTML output -------------------------------------------------

html_theme = 'classic'
