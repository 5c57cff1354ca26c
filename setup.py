from setuptools import setup, find_packages

setup(
    name="dexbot",
    version="0.1",
    packages=find_packages(exclude=["*.tests", "*.tests.*"]),
    install_requires=[
        "pandas>=2.2.2",
        "numpy>=1.26.4",
        "PyYAML>=6.0.1",
        "requests>=2.32.0",
        "python-dotenv>=1.0.1",
        "coincurve>=20.0.0",
        "eth-utils>=4.0.0",
        "eth-hash[pycryptodome]>=0.7.0",
    ],
    extras_require={
        "test": ["pytest>=8.0"],
    },
    test_suite="dexbot/tests",  # This points to the folder where your test cases are located
)
