#!/usr/bin/env python
from pathlib import Path
from setuptools import setup, find_namespace_packages

long_description = Path("README.md").read_text()

setup(
    name='haunts',
    version='0.1.0',
    description='Adaptive location sampling and place detection for mobile location histories: '
                'battery-aware sampling tiers, stationary point extraction, grid clustering, '
                'a live place registry with visit tracking, and visit-time place categorization.',
    long_description=long_description,
    long_description_content_type='text/markdown',

    packages=find_namespace_packages(include=['haunts', 'haunts.*']),
    python_requires='>=3.9',

    install_requires=[
        'pandas',
        'geopandas',
        'numpy',
        'scipy',
        'pyarrow',
    ],

    extras_require={
        'test': [
            'pytest',
        ]
    },

    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
)
