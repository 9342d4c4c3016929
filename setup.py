"""Build the vbuscsv package."""

from setuptools import setup

setup(
    name="vbuscsv",
    version="0.1.0",
    description="Datalogger recording decoder and CSV converter",
    package_dir={"": "python"},
    packages=["vbuscsv"],
    python_requires=">=3.9",
    install_requires=["numpy"],
    extras_require={"test": ["pytest"]},
    entry_points={"console_scripts": ["vbuscsv = vbuscsv.cli:main"]},
)
