"""
CDK stacks for a fleet of self-hosted CI runners, and the lambda
that drains them on scale-in.
"""
