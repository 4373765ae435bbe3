"""
PicSearch: multimodal image similarity search.

This package provides functionality for ingesting batches of images,
generating CLIP embeddings, and retrieving the most similar images by
free-text description or by query image using an exact FAISS index.
"""

__version__ = "0.1.0"
__author__ = "Development Team"
__email__ = "dev@example.com"
