"""
Usage accounting package.

Query usage is keyed by calendar month so a new month starts from zero
without any reset write. Transaction volume is derived from successful
transactions on every read.
"""
