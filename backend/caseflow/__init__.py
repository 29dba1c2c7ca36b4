"""
CaseFlow - case workflow engine for education advisory services
"""
__version__ = "1.0.0"
