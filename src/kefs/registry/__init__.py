"""Repository access package.

- manifest.py: maven-metadata.xml retrieval (remote and local) and parsing
- downloader.py: staged, single-flight jar downloads and local copies
- locator.py: bundle-consistent resolution across repositories
"""
