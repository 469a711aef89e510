"""The version string of the program, set when a release is built."""

VERSION = "<unknown>"