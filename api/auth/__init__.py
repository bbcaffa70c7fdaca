"""
Caller identity: bearer access tokens issued by the upstream auth service.
"""
