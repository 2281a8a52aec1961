"""Convoy — multi-user web chat server for the Claude Agent SDK."""

__version__ = "0.3.0"
