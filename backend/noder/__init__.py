"""
noder: workflow execution engine for graphs of generation nodes.
"""
