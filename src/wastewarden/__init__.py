"""Wastewarden - surplus food marketplace lifecycle core.

Coordinates donors, requesters and NGOs: time-boxed requests, donation
claims, the NGO pickup/delivery workflow and deferred points awards.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
