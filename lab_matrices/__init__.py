"""
Lab Matrices
============

Patient x lab test matrices built by matching each cohort patient's lab
results to their reference date.
"""

__version__ = "0.1.0"
