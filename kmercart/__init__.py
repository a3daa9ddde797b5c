"""KmerCart multi-vendor marketplace API."""

from kmercart.app import create_app

__all__ = ["create_app"]
