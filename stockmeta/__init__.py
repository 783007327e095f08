"""
Stockmeta - AI Stock Photo Metadata Generator
=============================================

Generates Adobe Stock titles, descriptions, and keywords for images using
the Google Gemini API and exports them as an upload-ready CSV file.
"""

__version__ = "1.0.0"
