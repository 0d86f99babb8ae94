"""Game-server side of the sidecar: the OS process and its `server.properties`."""
