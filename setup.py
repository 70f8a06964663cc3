"""
python -m build
twine upload dist/*
"""

from setuptools import setup, find_packages


def mofrs_setup():
    with open("requirements.txt", "rt") as fp:
        install_requires = fp.read().strip().split("\n")

    version = "0.4.2"

    setup(
        name="mofrs",
        packages=find_packages(exclude=["tests", "tests.*"]),
        version=version,
        license="MIT",
        description="mofrs : Mongo Flask-Restful Resources",
        long_description=open("README.rst").read(),
        keywords=["MongoDB", "Flask", "REST", "Relationships", "Hooks"],
        python_requires=">=3.8, <4",
        install_requires=install_requires,
        classifiers=[
            "Development Status :: 3 - Alpha",
            "License :: OSI Approved :: MIT License",
            "Intended Audience :: Developers",
            "Framework :: Flask",
            "Topic :: Software Development :: Libraries",
            "Environment :: Web Environment",
            "Programming Language :: Python :: 3.12",
            "Programming Language :: Python :: 3.11",
            "Programming Language :: Python :: 3.10",
            "Programming Language :: Python :: 3.9",
            "Programming Language :: Python :: 3.8",
        ],
        extras_require={"test": ["pytest>=7.0", "mongomock>=4.1.2"]},
    )


mofrs_setup()  # pragma: no cover
