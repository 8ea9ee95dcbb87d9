from setuptools import setup, find_packages

from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

setup(
    name='il2cppfile',
    version='0.1.0',
    description='Library to recover the il2cpp code and metadata registrations from native PE images',
    long_description=long_description,
    long_description_content_type='text/markdown',
    packages=find_packages(exclude=['tests', 'tests.*']),
    package_dir={'il2cppfile': 'il2cppfile'},
    install_requires=[
        'pefile',
        'capstone'
    ],
    extras_require={
        'test': [
            'pytest'
        ]
    },
    python_requires='>=3.7'
)
