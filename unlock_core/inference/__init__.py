"""Verification policy and matching capabilities.

Heavy backends (DeepFace, onnxruntime) are imported only by the code paths
that use them.
"""
