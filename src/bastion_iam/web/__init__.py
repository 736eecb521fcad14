"""HTTP layer for Bastion-IAM."""
