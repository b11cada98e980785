"""
Setup script for Enigmo - End-to-end encrypted message relay.

This relay provides:
- X25519 + HKDF session keys between peers
- ChaCha20-Poly1305 encryption with Ed25519 signatures over ciphertext
- A routing layer that forwards opaque envelopes and never sees plaintext
- Delivery tracking (sent, delivered, read)
- REST health and statistics probes
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='enigmo-relay',
    version='1.0.0',
    author='enigmo contributors',
    description='An end-to-end encrypted message relay that routes opaque signed envelopes',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Framework :: AsyncIO',
    ],
    python_requires='>=3.9',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'rich>=13.7.0',
        'fastapi>=0.110.0',
        'uvicorn>=0.29.0',
        'tomli>=2.0.1; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=8.0.0',
            'pytest-asyncio>=0.23.0',
            'httpx>=0.27.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'enigmo-relay=enigmo.server:main',
            'enigmo-hash-credential=enigmo.credentials:main',
        ],
    },
)
