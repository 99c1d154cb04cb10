"""macOS system boundary: commands, network services, profiles and the proxy."""
