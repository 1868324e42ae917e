"""Maintain a fork as a patch set over an upstream git branch."""
