#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-ldapclient',
    version='1.0.0',
    description='A pooled, thread-safe LDAP client built on python-ldap',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap'],
    author="Caltech IMSS ADS",
    author_email="imss-ads-staff@caltech.edu",
    url='https://github.com/caltechads/django-ldapclient',
    packages=find_packages(exclude=['bin']),
    include_package_data=True,
    python_requires='>=3.10',
    install_requires=[
        'django',
        'ldap_filter',
        'python-ldap',
    ],
    extras_require={
        'test': [
            'python-ldap-faker',
            'pytest',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3"
    ],
)
