"""
Device records, request/response models, and the device repository.
"""
