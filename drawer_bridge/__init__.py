"""Drawer Bridge: cash-drawer opener driven by the POS print queue."""

__version__ = '1.0.0'
