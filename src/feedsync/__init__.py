"""feedsync - quota-aware read/star state sync for a personal feed reader."""

__version__ = "0.1.0"
