"""ServerForge - AI-generated image server workshop.

Turns a natural-language description into a runnable image-generation
server handler, then:
- validates and smoke-tests the generated code in an isolated process
- charges credits only when a version is accepted
- hosts accepted code and splits hosted charges into royalties
"""

__version__ = "0.1.0"
