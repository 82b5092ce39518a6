# Application layer - collaborator contracts and services
