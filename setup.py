from setuptools import setup, find_packages
from os import path
from simrecon import __version__

this_dir = path.abspath(path.dirname(__file__))
with open(path.join(this_dir, "README.md")) as f:
    long_description = f.read()

required_pkgs = ['numpy',
                 'scipy',
                 'matplotlib',
                 'scikit-image',
                 'tifffile',
                 'dask',
                 ]

# extras
extras = {'tests': ['pytest'],
          'docs': ['sphinx']}

setup(
    name='simrecon',
    version=__version__,
    description="Structured illumination microscopy (SIM) super-resolution reconstruction using the generalized"
                " Wiener filter, including estimation of the illumination parameters from the raw data.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=['simrecon', 'simrecon.*']),
    python_requires='>=3.9',
    install_requires=required_pkgs,
    extras_require=extras)
