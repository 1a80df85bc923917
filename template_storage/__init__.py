"""
Template packaging and storage service.

Takes ZIP archives uploaded by administrators, validates and extracts them,
stores the contents in an object-storage bucket or a per-template source
repository, and rebuilds downloadable ZIPs for customers who purchased them.
"""
