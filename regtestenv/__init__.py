"""
RegtestEnv: portable regtest Bitcoin environments.

Packages chain data, node wallets, multisig configs and key material into a
single ``.caravan-env`` archive that can be replayed or restored elsewhere.
"""

__version__ = "1.3.0"
__all__ = ["__version__"]
