"""
modelscope-cli: a resumable downloader for ModelScope model repositories.
"""

__version__ = "0.1.0"
