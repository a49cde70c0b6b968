import setuptools

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setuptools.setup(
    name="pyeasun",
    version="0.1.0",
    author="pyeasun contributors",
    description=(
        "A Python library for interacting with EASUN solar inverters over "
        "Modbus RTU, via serial port or the vendor WiFi module"
    ),
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="BSD",
    keywords="easun smg-ii modbus rtu wifi solar inverter",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Topic :: Utilities",
        "License :: OSI Approved :: BSD License",
    ],
    packages=setuptools.find_packages(include=["pyeasun", "pyeasun.*"]),
    python_requires=">=3.10",
    install_requires=[
        "umodbus",
        "pyserial",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
