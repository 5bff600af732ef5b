from setuptools import find_packages, setup

setup(
    name='flashlink',
    version='1.0.0',
    description='Serial monitor and firmware flashing session manager for microcontroller boards',
    author='isantolin',
    author_email='',
    packages=find_packages(include=['flashlink', 'flashlink.*']),
    python_requires='>=3.11',
    install_requires=[
        'pyserial',
        'pyserial-asyncio-fast',
        'transitions',
        'tenacity',
        'msgspec',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
)
