#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-ldapbook',
    version='1.0.0',
    description='Directory-backed contact address books for Django',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap', 'addressbook', 'contacts'],
    author="Caltech IMSS ADS",
    author_email="imss-ads-staff@caltech.edu",
    url='https://github.com/caltechads/django-ldapbook',
    packages=find_packages(exclude=['bin']),
    include_package_data=True,
    package_data={'ldapbook.tests': ['*.json']},
    install_requires=[
        'django',
        'ldap_filter',
        'python-ldap',
        'pyasn1',
    ],
    extras_require={
        'test': [
            'pytest',
            'python-ldap-faker',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3"
    ],
)
