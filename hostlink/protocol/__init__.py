"""
Control protocol implementation for hostlink.

This package contains the line protocol spoken over the control socket:
- codec: tokenizing command lines and encoding replies and push events
- screen: framebuffer dumps and checksums
- dispatcher: command handlers
- control_socket: the Unix socket server

Import from the specific module you need, e.g.
`hostlink.protocol.control_socket`.
"""
