# mock_backend/__init__.py
"""
In-memory stand-ins for the services, certificate authority and directory
that deployment scripts drive.

- services / certificates / directory: the three sub-stores
- store: MockStateStore aggregate and the process default instance
- gateway: BackendGateway interface and its mock binding
- interceptor: maps PowerShell command names onto a gateway
"""
