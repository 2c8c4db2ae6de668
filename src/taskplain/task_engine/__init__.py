"""Task engine: the file-backed task model, hierarchy, ranking and mutations.

Tasks are markdown files with YAML front matter under ``tasks/<NN-state>/``.
Every service here reads a fresh snapshot per call; nothing is cached.
"""
