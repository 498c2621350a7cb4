"""
python -m build
twine upload dist/*
"""

from setuptools import setup, find_packages


def jsonapi_crud_setup():
    with open("requirements.txt", "rt") as fp:
        install_requires = fp.read().strip().split("\n")

    about = {}
    with open("jsonapi_crud/__about__.py", "rt") as fp:
        exec(fp.read(), about)
    version = about["__version__"]

    setup(
        name="jsonapi-crud",
        packages=find_packages(exclude=["tests", "tests.*", "examples"]),
        version=version,
        license="MIT",
        description=about["__description__"],
        long_description=open("README.rst").read(),
        keywords=["SqlAlchemy", "FastAPI", "REST", "JsonAPI", "OpenAPI", "CRUD"],
        python_requires=">=3.9, <4",
        install_requires=install_requires,
        classifiers=[
            "Development Status :: 3 - Alpha",
            "License :: OSI Approved :: MIT License",
            "Intended Audience :: Developers",
            "Framework :: FastAPI",
            "Topic :: Software Development :: Libraries",
            "Environment :: Web Environment",
            "Programming Language :: Python :: 3.12",
            "Programming Language :: Python :: 3.11",
            "Programming Language :: Python :: 3.10",
            "Programming Language :: Python :: 3.9",
        ],
        extras_require={
            "test": ["pytest>=7.4", "pytest-asyncio>=0.23", "httpx>=0.27"],
            "demo": ["uvicorn>=0.23"],
        },
    )


jsonapi_crud_setup()  # pragma: no cover
