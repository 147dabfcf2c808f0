from setuptools import find_packages
from setuptools import setup


description="Build track candidates from embedded spacepoints with a radius graph, edge classification and connected components"

dependencies = [
        "numpy",
        "pandas",
        "setuptools",
        'pyyaml>=5.1',
        'torch',
        ]

test_dependencies = [
        "pytest",
        "scipy",
        "scikit-learn",
        ]

setup(
    name="ExatrkX-TrackFinding",
    version="0.1.0",
    description="Graph based track finding from learned spacepoint embeddings.",
    long_description=description,
    author="Daniel Murnane, on behalf of the Exa.Trkx Collaboration",
    license="Apache License, Version 2.0",
    keywords=["graph networks", "track finding", "tracking", "metric learning", "GNN", "machine learning"],
    url="https://github.com/exatrkx/exatrkx-work",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["pipeline"],
    install_requires=dependencies,
    extras_require={"test": test_dependencies},
    python_requires=">=3.7",
    classifiers=[
        "Programming Language :: Python :: 3",
    ],
    entry_points={
        "console_scripts": ["exatrkx-track-finding=pipeline:main"],
    },
)
