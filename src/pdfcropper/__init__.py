"""pdfcropper – mark question regions on PDF pages and export them as archives."""

__version__ = "0.3.0"
