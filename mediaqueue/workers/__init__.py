"""Background workers.

This package contains the download worker, which turns QUEUED requests into
cached, playable media.
"""
