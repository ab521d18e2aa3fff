#!/usr/bin/env python3
"""Command line runner"""
from dbdump.cli import main

if __name__ == '__main__':
    main()
