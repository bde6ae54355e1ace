from bulk_flasher.utils.flashing.flash_cli import main

main()
