"""Encode zk proof artifacts for an on-chain verifier and benchmark its TPS and gas cost."""

__version__ = "0.1.0"
