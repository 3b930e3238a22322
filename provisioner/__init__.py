"""
devenv-provisioner — manifest-driven development environment setup.
"""

__version__ = "0.1.0"
