#!/usr/bin/env python3
"""Single-host deployment tool: CLI entrypoint."""

from hostdeploy.hostdeploy import main

if __name__ == "__main__":
    main()
