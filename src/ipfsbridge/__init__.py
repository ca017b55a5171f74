"""ipfsbridge - resilient access to an IPFS node through tunnels and relays."""

__version__ = "0.1.0"
