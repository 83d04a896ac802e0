"""
Background Remover & Cartoonizer Pipeline

Two-stage async pipeline:
1. Background removal - local rembg segmentation with estimated progress
2. Stylization - remote cartoonize API
"""
