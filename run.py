#!/usr/bin/env python3
"""Runner for a source checkout (the installed entry point is `hostguard`)"""
from hostguard.cli import main

if __name__ == '__main__':
    main()
