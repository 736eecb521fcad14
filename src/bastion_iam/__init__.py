"""Bastion-IAM: identity and access management decision core."""

__version__ = "0.4.0"
