"""
Setup script for Capsule - Passphrase-encrypted peer-to-peer file transfer.

Created by orpheus497

This tool provides:
- Direct peer-to-peer links over WebRTC (no signaling server)
- Manual offer/answer exchange by copy/paste or QR code
- Per-item AES-256-GCM keys derived from one shared passphrase
- Chunked encrypted file transfer and plaintext chat
- Local encrypted vault with single-file archive export
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='capsule',
    version='1.0.0',
    author='orpheus497',
    description='Passphrase-encrypted peer-to-peer file transfer, chat and local vault over WebRTC',
    long_description=long_description,
    long_description_content_type='text/markdown',
    url='https://github.com/orpheus497/capsule',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: File Sharing',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.9',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'aiofiles>=23.2.1',
        'aiortc>=1.6.0',
        'rich>=13.7.0',
        'tomli>=2.0.1; python_version < "3.11"',
    ],
    extras_require={
        'qr': [
            'qrcode>=7.4.2',
            'pillow>=10.2.0',
            'pyzbar>=0.1.9',
        ],
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'capsule=capsule.cli:main',
        ],
    },
)
